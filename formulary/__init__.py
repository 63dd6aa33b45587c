"""Formulary: a formula engine.

Resolves named, versioned formulas and their dependencies from JSON
manifests, fetches their sources into a digest-verified cache, and installs
them atomically into a shared namespace prefix:
  - Deterministic dependency plans (topological, lexicographic tie-break)
  - SHA-256 verified, content-addressed fetch cache
  - Atomic install/upgrade via a single symlink flip per formula
  - Rollback to the previously installed version
  - Post-install smoke tests reported separately from the install
"""

__version__ = "0.1.0"
__description__ = "Formula engine: resolve, verify and atomically install versioned packages"

from formulary.config import EngineConfig
from formulary.core.engine import Engine
from formulary.core.formula_store import FormulaStore
from formulary.cli.app import app as cli

__all__ = ["Engine", "EngineConfig", "FormulaStore", "cli", "__version__"]

"""Validator — runs a formula's post-install smoke test.

The test command is executed against the installed namespace: ``{prefix}``,
``{bin}`` and ``{opt}`` placeholders in ``argv`` are expanded, and the
namespace ``bin`` directory is prepended to ``PATH``. A failing test never
uninstalls anything; the caller decides whether to roll back.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path

from formulary.models.formula import Formula
from formulary.models.results import TestResult

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 4096


def expand_argv(formula: Formula, prefix: Path) -> list[str]:
    """Substitute namespace placeholders into the test command."""
    if formula.test is None:
        return []
    prefix = Path(prefix)
    values = {
        "prefix": str(prefix),
        "bin": str(prefix / "bin"),
        "opt": str(prefix / "opt" / formula.name),
        "name": formula.name,
        "version": formula.version,
    }
    expanded = []
    for arg in formula.test.argv:
        for key, value in values.items():
            arg = arg.replace("{" + key + "}", value)
        expanded.append(arg)
    return expanded


class Validator:
    """Executes post-install tests.

    Parameters
    ----------
    timeout:
        Default timeout in seconds when a test declares none.
    env:
        Extra environment variables for the test process.
    """

    def __init__(self, *, timeout: float | None = 60.0, env: dict[str, str] | None = None) -> None:
        self._timeout = timeout
        self._env = dict(env or {})

    def validate(self, formula: Formula, prefix: Path) -> TestResult:
        """Run ``formula.test`` and report whether the exit status matched."""
        if formula.test is None:
            logger.info("%s declares no test; treating as passed", formula.key)
            return TestResult(
                name=formula.name,
                version=formula.version,
                passed=True,
                reason="no test declared",
            )

        argv = expand_argv(formula, prefix)
        expected = formula.test.expected_status
        timeout = formula.test.timeout_seconds or self._timeout
        env = {**os.environ, **self._env}
        env["PATH"] = os.pathsep.join([str(Path(prefix) / "bin"), env.get("PATH", "")])

        logger.info("Testing %s: %s", formula.key, " ".join(argv))
        started = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                cwd=str(prefix),
            )
        except subprocess.TimeoutExpired:
            return self._failed(formula, started, f"timed out after {timeout}s")
        except OSError as exc:
            return self._failed(formula, started, f"could not execute {argv[0]}: {exc}")

        passed = proc.returncode == expected
        result = TestResult(
            name=formula.name,
            version=formula.version,
            passed=passed,
            exit_status=proc.returncode,
            expected_status=expected,
            stdout=proc.stdout[-_OUTPUT_LIMIT:],
            stderr=proc.stderr[-_OUTPUT_LIMIT:],
            duration_seconds=time.monotonic() - started,
            reason="" if passed else f"exit status {proc.returncode}, expected {expected}",
        )
        if passed:
            logger.info("%s test passed", formula.key)
        else:
            logger.warning("%s test failed: %s", formula.key, result.reason)
        return result

    @staticmethod
    def _failed(formula: Formula, started: float, reason: str) -> TestResult:
        logger.warning("%s test failed: %s", formula.key, reason)
        return TestResult(
            name=formula.name,
            version=formula.version,
            passed=False,
            expected_status=formula.test.expected_status if formula.test else 0,
            duration_seconds=time.monotonic() - started,
            reason=reason,
        )

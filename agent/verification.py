"""
Post-action verification gate.

Runs external lint / test / type-check processes against the single file a
tool touched. Each check is time-bounded and turns its own failure into a
CheckResult, so verification never raises into the conversation loop.
"""

import asyncio
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Optional, Tuple

from backend import Backend
from config import app_config
from context.telemetry import ContextTelemetry
from tools._common import ToolResult
from tools.schemas import READ_ONLY_OPERATIONS
from tools.search_ops import lint_command, LINTABLE_EXTENSIONS

logger = logging.getLogger(__name__)

_ESLINT_LINE = re.compile(r"^\s*(\d+):(\d+)\s+(error|warning)\s+(.+)$")
_COLON_LINE = re.compile(r"^(.+?):(\d+):(\d+):\s*(.+)$")
_TSC_LINE = re.compile(r"^(.+)\((\d+),(\d+)\):\s+error\s+(TS\d+):\s+(.+)$")
_MYPY_LINE = re.compile(r"^(.+?):(\d+):(?:\d+:)?\s*error:\s*(.+)$")

_PY_EXTS = (".py", ".pyi")
_JS_EXTS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
_MAX_ISSUES = 20

VERIFICATION_FEEDBACK_TEMPLATE = "Verification failed:\n{feedback}\n\nPlease fix the issues above."


@dataclass
class CheckResult:
    passed: bool
    issues: List[str] = field(default_factory=list)
    output: str = ""
    duration: float = 0.0


@dataclass
class VerificationResult:
    passed: bool
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    duration: float = 0.0


@dataclass
class VerificationConfig:
    mode: str = app_config.verification_mode  # fast | thorough
    lint_enabled: bool = True
    tests_enabled: bool = app_config.verification_run_tests
    types_enabled: bool = app_config.verification_run_types
    lint_timeout: float = app_config.lint_timeout
    test_timeout: float = app_config.test_timeout
    type_timeout: float = app_config.type_timeout


def _parse_lint_output(output: str) -> List[str]:
    issues = []
    for line in output.splitlines():
        m = _ESLINT_LINE.match(line)
        if m:
            issues.append(f"Line {m.group(1)}:{m.group(2)} - {m.group(3)}: {m.group(4)}")
            continue
        m = _COLON_LINE.match(line)
        if m:
            issues.append(f"Line {m.group(2)}:{m.group(3)} - {m.group(4)}")
    if not issues and output.strip():
        issues = [line for line in output.strip().splitlines() if line.strip()]
    return issues[:_MAX_ISSUES]


def _parse_type_output(output: str) -> List[str]:
    errors = []
    for line in output.splitlines():
        m = _TSC_LINE.match(line)
        if m:
            errors.append(f"{m.group(1)}:{m.group(2)}:{m.group(3)} - {m.group(4)}: {m.group(5)}")
            continue
        m = _MYPY_LINE.match(line)
        if m:
            errors.append(f"{m.group(1)}:{m.group(2)} - {m.group(3)}")
    return errors[:_MAX_ISSUES]


def format_feedback(result: VerificationResult) -> str:
    """Render failed checks as markdown feedback for the model."""
    parts = []
    lint = result.checks.get("lint")
    if lint is not None and not lint.passed:
        parts.append("**Lint issues:**\n" + "\n".join(f"  - {i}" for i in lint.issues))
    tests = result.checks.get("tests")
    if tests is not None and not tests.passed:
        parts.append("\n**Test failures:**\n" + (tests.output or "\n".join(tests.issues)))
    types = result.checks.get("types")
    if types is not None and not types.passed:
        parts.append("\n**Type errors:**\n" + "\n".join(f"  - {e}" for e in types.issues))
    return "\n".join(parts)


class VerificationGate:
    """Runs the checks that apply to a successful write-class ToolResult."""

    def __init__(self, backend: Backend, config: Optional[VerificationConfig] = None,
                 telemetry: Optional[ContextTelemetry] = None):
        self.backend = backend
        self.config = config or VerificationConfig()
        self.telemetry = telemetry

    def should_verify(self, result: ToolResult) -> bool:
        return bool(
            result.success
            and result.file_path
            and result.operation not in READ_ONLY_OPERATIONS
        )

    async def verify(self, result: ToolResult, mode: Optional[str] = None) -> VerificationResult:
        if not self.should_verify(result):
            return VerificationResult(passed=True)

        mode = mode or self.config.mode
        start = time.monotonic()
        path = self._relative(result.file_path)
        ext = os.path.splitext(path)[1].lower()
        checks: Dict[str, CheckResult] = {}

        if self.config.lint_enabled and ext in LINTABLE_EXTENSIONS:
            checks["lint"] = await self._bounded("lint", self._lint(path), self.config.lint_timeout)

        if mode == "thorough" and self.config.tests_enabled:
            test_file = self.find_related_test(path)
            if test_file:
                checks["tests"] = await self._bounded("tests", self._tests(test_file), self.config.test_timeout)

        if mode == "thorough" and self.config.types_enabled and ext in _PY_EXTS + _JS_EXTS:
            checks["types"] = await self._bounded("types", self._types(path, ext), self.config.type_timeout)

        verification = VerificationResult(
            passed=all(c.passed for c in checks.values()),
            checks=checks,
            duration=time.monotonic() - start,
        )
        logger.info(
            f"Verified {path}: {'passed' if verification.passed else 'failed'} "
            f"({', '.join(checks) or 'no checks'}, {verification.duration:.2f}s)"
        )
        if self.telemetry is not None:
            self.telemetry.record("verification", verification.duration, strategy=mode)
        return verification

    def _relative(self, path: str) -> str:
        if os.path.isabs(path):
            return os.path.relpath(path, self.backend.working_directory)
        return path

    async def _bounded(self, name: str, check: Awaitable[CheckResult], timeout: float) -> CheckResult:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(check, timeout=timeout)
        except asyncio.TimeoutError:
            result = CheckResult(passed=False, issues=[f"{name} check timed out after {timeout}s"])
        except Exception as e:
            logger.warning(f"{name} check crashed: {e}")
            result = CheckResult(passed=False, issues=[f"{name} check failed: {e}"])
        result.duration = time.monotonic() - start
        return result

    async def _run(self, command: str, timeout: float) -> Tuple[str, str, int]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self.backend.run_command(command, cwd=".", timeout=timeout)
        )

    async def _lint(self, path: str) -> CheckResult:
        command = lint_command(path, self.backend)
        if not command:
            return CheckResult(passed=True, output="No linter configured")
        stdout, stderr, rc = await self._run(command, self.config.lint_timeout)
        output = (stdout + stderr).strip()
        if rc == 0:
            return CheckResult(passed=True, output=output)
        return CheckResult(passed=False, issues=_parse_lint_output(output), output=output)

    async def _tests(self, test_file: str) -> CheckResult:
        if test_file.endswith(_PY_EXTS):
            command = f"python -m pytest -q {shlex.quote(test_file)}"
        else:
            command = f"npx vitest run {shlex.quote(test_file)}"
        stdout, stderr, rc = await self._run(command, self.config.test_timeout)
        output = (stdout + stderr).strip()
        if rc == 0:
            return CheckResult(passed=True, output=output)
        tail = "\n".join(output.splitlines()[-40:])
        return CheckResult(passed=False, issues=[f"{test_file} failed"], output=tail)

    async def _types(self, path: str, ext: str) -> CheckResult:
        if ext in _PY_EXTS:
            command = f"mypy --no-error-summary {shlex.quote(path)}"
        else:
            command = "npx tsc --noEmit --pretty false"
        stdout, stderr, rc = await self._run(command, self.config.type_timeout)
        output = (stdout + stderr).strip()
        if rc == 0:
            return CheckResult(passed=True, output=output)
        errors = _parse_type_output(output)
        if ext not in _PY_EXTS:
            errors = [e for e in errors if e.startswith(path)] or errors
        return CheckResult(passed=False, issues=errors or [output[:500]], output=output)

    def find_related_test(self, path: str) -> Optional[str]:
        """Look for a test file beside the source, in ./tests, then in ../tests."""
        directory, filename = os.path.split(path)
        base, ext = os.path.splitext(filename)
        if ext in _PY_EXTS:
            names = [f"test_{base}{ext}", f"{base}_test{ext}"]
        else:
            names = [f"{base}.test{ext}", f"{base}.spec{ext}"]
        candidates = []
        for folder in (directory, os.path.join(directory, "tests"), os.path.join(directory, "..", "tests")):
            candidates.extend(os.path.normpath(os.path.join(folder, name)) for name in names)
        for candidate in candidates:
            try:
                if self.backend.file_exists(candidate):
                    return candidate
            except ValueError:
                continue
        return None



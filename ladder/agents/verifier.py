"""Command verifier: runs a task's verification commands after each attempt.

Its verdict replaces the backend's self-reported verification. Tasks with
no verification commands keep the backend's own verdict.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ladder.core.config import VerifierConfig
from ladder.core.exceptions import ShellTimeoutError, ToolError
from ladder.core.models import Finding, Severity, Task, Verification, VerificationReport
from ladder.tools.shell import run_command

logger = logging.getLogger("ladder.agents.verifier")


class CommandVerifier:
    def __init__(self, config: Optional[VerifierConfig] = None):
        self.config = config or VerifierConfig()

    def verify(self, task: Task, output: Any) -> VerificationReport:
        if not task.verification_commands:
            return VerificationReport()

        findings: list[Finding] = []
        category: Optional[str] = None
        for command in task.verification_commands:
            try:
                result = run_command(
                    command,
                    cwd=self.config.working_dir,
                    timeout=self.config.timeout_seconds,
                )
            except ShellTimeoutError as e:
                findings.append(Finding(
                    severity=Severity.MAJOR,
                    title=f"Verification timed out: {command}",
                    detail=str(e),
                    category="timeout",
                    locator=command,
                ))
                category = "timeout"
                continue
            except ToolError as e:
                findings.append(Finding(
                    severity=Severity.MAJOR,
                    title=f"Verification could not run: {command}",
                    detail=str(e),
                    category="verification",
                    locator=command,
                ))
                category = category or "verification_failed"
                continue

            if not result.success:
                findings.append(Finding(
                    severity=Severity.MAJOR,
                    title=f"Verification failed (exit {result.return_code}): {command}",
                    detail=result.tail(),
                    category="verification",
                    locator=command,
                ))
                category = category or "verification_failed"

        if findings:
            logger.info(
                "Task '%s': %d of %d verification command(s) failed",
                task.title, len(findings), len(task.verification_commands),
            )
            return VerificationReport(
                verification=Verification.FAIL,
                findings=findings,
                failure_category=category,
            )
        return VerificationReport(verification=Verification.PASS)

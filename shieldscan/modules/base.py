"""
BaseModule — the interface every analyzer must implement.

To add a new analyzer:

    1. Create shieldscan/modules/my_module.py
    2. Define a class inheriting from BaseModule
    3. Set  key, name, category  and  description  class attributes
    4. Implement  async def run(self, ..., config: Config) -> ModuleResult
    5. Wire it into core/engine.py

Analyzers are expected to catch their own protocol errors and turn them into
Checks.  The engine still wraps run() in a timeout and converts anything that
escapes into an error Check, so one broken analyzer never breaks the scan.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..core.types import Check, ModuleResult, Severity, Status


class BaseModule(ABC):
    """Abstract base for all ShieldScan analyzers."""

    key:         str = "module"
    name:        str = "unnamed"
    category:    str = "General"
    description: str = ""

    @abstractmethod
    async def run(self, *args, **kwargs) -> ModuleResult:
        """Execute all probes in this module and return a ModuleResult."""

    # ── helpers available to every module ─────────────────────────────────────

    def _result(self, result: Any, checks: list[Check]) -> ModuleResult:
        return ModuleResult(module_name=self.name, checks=checks, result=result)

    def _check(self,
               id: str,
               name: str,
               status: Status,
               severity: Severity,
               message: str,
               details: Optional[str] = None,
               evidence: Optional[str] = None,
               recommendation: Optional[str] = None,
               category: Optional[str] = None) -> Check:
        return Check(
            id=id, name=name, category=category or self.category,
            status=status, severity=severity, message=message,
            details=details, evidence=evidence, recommendation=recommendation,
        )

    def _passed(self, id: str, name: str, message: str, **kw) -> Check:
        return self._check(id, name, Status.PASSED, Severity.INFO, message, **kw)

    def _info(self, id: str, name: str, message: str, **kw) -> Check:
        return self._check(id, name, Status.INFO, Severity.INFO, message, **kw)

    @staticmethod
    def _grade_status(grade: str) -> Status:
        """Sub-grade → check bucket: A+/A pass, B warns, anything else fails."""
        if grade in ("A+", "A"):
            return Status.PASSED
        if grade == "B":
            return Status.WARNING
        return Status.FAILED

    @staticmethod
    def _grade_severity(grade: str) -> Severity:
        if grade == "F":
            return Severity.CRITICAL
        if grade == "D":
            return Severity.HIGH
        return Severity.INFO

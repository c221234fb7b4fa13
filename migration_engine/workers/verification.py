"""
Source/destination comparison helpers shared by the workers.
"""

import hashlib
import json
import random
from datetime import datetime
from typing import Any, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class VerificationCheck(BaseModel):
    """One comparison between source and destination."""
    name: str
    passed: bool
    expected: Any = None
    actual: Any = None
    message: Optional[str] = None


class VerificationResult(BaseModel):
    """Outcome of a worker's verify call."""
    passed: bool = True
    full: bool = False
    sampled: int = 0
    checks: List[VerificationCheck] = Field(default_factory=list)
    mismatches: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=datetime.utcnow)

    def add(self, check: VerificationCheck) -> VerificationCheck:
        self.checks.append(check)
        if not check.passed:
            self.passed = False
            self.mismatches.append(check.message or check.name)
        return check

    def compare(self, name: str, expected: Any, actual: Any, message: Optional[str] = None) -> bool:
        passed = expected == actual
        self.add(VerificationCheck(
            name=name,
            passed=passed,
            expected=expected,
            actual=actual,
            message=None if passed else (message or f"{name}: expected {expected!r}, got {actual!r}"),
        ))
        return passed

    @property
    def failed_checks(self) -> List[VerificationCheck]:
        return [check for check in self.checks if not check.passed]

    def summary(self) -> str:
        if self.passed:
            return f"{len(self.checks)} checks passed"
        shown = "; ".join(self.mismatches[:5])
        more = f" (+{len(self.mismatches) - 5} more)" if len(self.mismatches) > 5 else ""
        return f"{len(self.failed_checks)} of {len(self.checks)} checks failed: {shown}{more}"


def checksum(value: Any) -> str:
    """MD5 of the canonical JSON form of ``value``."""
    canonical = json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


def choose_sample(items: Sequence[T], size: Optional[int], seed: Optional[int] = None) -> List[T]:
    """Random sample of ``size`` items, or all of them when ``size`` is None."""
    if size is None or size >= len(items):
        return list(items)
    return random.Random(seed).sample(list(items), size)

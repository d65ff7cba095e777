"""Immutable results of sync cycles."""

from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType

def _frozen(counts):
    return MappingProxyType(dict(counts or {}))

@dataclass(frozen=True)
class ItemOutcome:
    """Outcome of one entity or document within a phase."""

    category: str
    ok: bool

@dataclass(frozen=True)
class SyncResult:
    """Per-category success and error counts of a phase or cycle.

    ``success`` is False only when a systemic failure aborted a phase;
    per-item failures show up in ``error_counts`` alone.
    """

    success: bool = True
    error_message: str = None
    success_counts: MappingProxyType = field(default_factory=lambda: _frozen({}))
    error_counts: MappingProxyType = field(default_factory=lambda: _frozen({}))

    def __post_init__(self):
        object.__setattr__(self, 'success_counts', _frozen(self.success_counts))
        object.__setattr__(self, 'error_counts', _frozen(self.error_counts))

    @classmethod
    def from_outcomes(cls, outcomes, success=True, error_message=None):
        successes = Counter()
        errors = Counter()
        for outcome in outcomes:
            (successes if outcome.ok else errors)[outcome.category] += 1
        return cls(success=success, error_message=error_message,
                   success_counts=successes, error_counts=errors)

    @classmethod
    def failed(cls, error_message):
        return cls(success=False, error_message=error_message)

    def merge(self, other, prefix=''):
        """Fold ``other`` into a new result, prefixing its category names."""
        successes = Counter(self.success_counts)
        errors = Counter(self.error_counts)
        for category, count in other.success_counts.items():
            successes[f"{prefix}{category}"] += count
        for category, count in other.error_counts.items():
            errors[f"{prefix}{category}"] += count

        messages = [m for m in (self.error_message, other.error_message) if m]
        return SyncResult(
            success=self.success and other.success,
            error_message="; ".join(messages) or None,
            success_counts=successes,
            error_counts=errors,
        )

    @property
    def total_success(self):
        return sum(self.success_counts.values())

    @property
    def total_errors(self):
        return sum(self.error_counts.values())

    def to_dict(self):
        return {
            'success': self.success,
            'error_message': self.error_message,
            'success_counts': dict(self.success_counts),
            'error_counts': dict(self.error_counts),
            'total_success': self.total_success,
            'total_errors': self.total_errors,
        }

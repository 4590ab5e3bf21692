
from .classifier import ModerationPolicy, ModerationVerdict, classify, normalize_for_moderation
from .ledger import LockdownEntry, LockdownRegistry, StrikeLedger

__all__ = [
    "LockdownEntry",
    "LockdownRegistry",
    "ModerationPolicy",
    "ModerationVerdict",
    "StrikeLedger",
    "classify",
    "normalize_for_moderation",
]

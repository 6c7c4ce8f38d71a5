"""
Exception types for the battle loop.

Budget stops are not exceptions; they are reported as abort or stop reasons.
"""

from decimal import Decimal


class BattleGuardError(RuntimeError):
    pass


class LedgerWriteError(BattleGuardError):
    """Spend could not be recorded. Fatal to the whole run."""


class GradingError(BattleGuardError):
    """Referee response could not be turned into a valid score.

    ``cost`` is what the failed grading call was billed, already logged.
    """

    def __init__(self, message: str, cost: Decimal = Decimal("0")):
        super().__init__(message)
        self.cost = cost
        self.result = None  # set once the battle has been finalized


class PersonaNotFoundError(BattleGuardError):
    pass


class InvalidTransition(BattleGuardError):
    pass


class PersistenceError(BattleGuardError):
    """A finalized battle could not be written to the store."""

    result = None

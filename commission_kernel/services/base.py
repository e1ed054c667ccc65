"""
BaseService -- abstract base for session-scoped kernel services.

Responsibility:
    Common constructor for services that work inside a transaction owned by
    someone else.  They persist with ``session.flush()`` and never commit or
    roll back.

Architecture position:
    Kernel > Services.  Request-level services (intake, decision, card
    settlement) and the collection cycle own their transaction through
    ``transaction_scope`` and compose these flush-only services inside it.
"""

from abc import ABC

from sqlalchemy.orm import Session

from commission_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for flush-only kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

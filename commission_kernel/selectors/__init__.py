"""Read-only selectors for the commission kernel."""

from commission_kernel.selectors.debt_selector import DebtSelector

__all__ = ["DebtSelector"]

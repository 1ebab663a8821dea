"""
User-decision port.

Protocols never prompt directly. They ask an injected port for the amount,
the target account id and a yes/no confirmation, and report outcomes
through notify(). A UI, CLI or HTTP handler supplies the implementation.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger("neardrop.ports")


class UserDecisionPort(ABC):

    @abstractmethod
    def ask_amount(self, prompt: str) -> Optional[str]:
        """NEAR amount as typed by the user; None or "" = cancelled."""
        ...

    @abstractmethod
    def ask_account_id(self, prompt: str) -> Optional[str]:
        ...

    @abstractmethod
    def confirm(self, message: str) -> bool:
        ...

    @abstractmethod
    def notify(self, message: str) -> None:
        ...


class PresetDecisions(UserDecisionPort):
    """
    Answers fixed up front (one HTTP request, one test). Every prompt,
    confirmation and notification is recorded in order.
    """

    def __init__(
        self,
        amount: Optional[str] = None,
        account_id: Optional[str] = None,
        approve: bool = True,
    ):
        self.amount = amount
        self.account_id = account_id
        self.approve = approve
        self.prompts: list[str] = []
        self.confirmations: list[str] = []
        self.notifications: list[str] = []

    def ask_amount(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        return self.amount

    def ask_account_id(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        return self.account_id

    def confirm(self, message: str) -> bool:
        self.confirmations.append(message)
        return self.approve

    def notify(self, message: str) -> None:
        self.notifications.append(message)
        logger.info(f"Notify: {message}")

    @property
    def last_notification(self) -> str:
        return self.notifications[-1] if self.notifications else ""

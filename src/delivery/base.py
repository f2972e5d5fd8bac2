"""
Module to contain base class for alert delivery channels
"""
from abc import ABC, abstractmethod
from typing import List

from core.entities import Alert


class AlertChannel(ABC):
    """
    Base interface for all alert delivery channels.
    """

    name: str

    @abstractmethod
    async def deliver(
        self,
        *,
        run_date: str,
        alerts: List[Alert],
    ) -> None:
        """
        Deliver the newly created alerts.
        Must raise exceptions on failure (handled upstream).
        """
        raise NotImplementedError

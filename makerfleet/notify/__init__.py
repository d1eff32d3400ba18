"""
Operator notifications for makerfleet.
"""

from makerfleet.notify.telegram import TelegramNotifier

__all__ = ["TelegramNotifier"]

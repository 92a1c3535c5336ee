"""Operator notifications."""

from swapresolver.notifications.telegram import OperatorNotifier

__all__ = ["OperatorNotifier"]

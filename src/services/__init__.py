"""Services that orchestrate polling and delivery."""

from src.services.notifier_service import NotifierService

__all__ = ["NotifierService"]

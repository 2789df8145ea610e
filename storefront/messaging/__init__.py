from .dispatcher import NotificationDispatcher
from .mailer import EmailChannel
from .telegram import TelegramChannel

__all__ = ["NotificationDispatcher", "EmailChannel", "TelegramChannel"]

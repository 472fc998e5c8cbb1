"""
Telegram Bot module for West Sant Transportation.

ARCHITECTURE: update -> classify -> guard -> per-chat lock -> handler
- Receives updates by webhook (FastAPI) or polling (python-telegram-bot)
- Classifies each update once (command / text / media / callback)
- Drops re-delivered updates (IdempotencyGuard)
- Runs registration dialogs (RegistrationEngine + SessionStore)
- Binds chats to passenger / volunteer / dashboard records (RoleResolutionService)
"""

from .bot import handle_telegram_update, initialize_bot, shutdown_bot, get_runtime
from .context import SessionStore, ConversationSession
from .idempotency import IdempotencyGuard

__all__ = [
    "handle_telegram_update",
    "initialize_bot",
    "shutdown_bot",
    "get_runtime",
    "SessionStore",
    "ConversationSession",
    "IdempotencyGuard",
]

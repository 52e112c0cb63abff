from app.schemas.conversation_state import ConversationStatePayload
from app.schemas.telegram import TelegramUpdate, TelegramWebhookResponse

__all__ = ["ConversationStatePayload", "TelegramUpdate", "TelegramWebhookResponse"]

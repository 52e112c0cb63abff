from app.models.conversation_state import ConversationStateRecord
from app.models.listing import Listing
from app.models.profile import Profile
from app.models.rate_limit import RateLimit

__all__ = [
    "ConversationStateRecord",
    "Listing",
    "Profile",
    "RateLimit",
]

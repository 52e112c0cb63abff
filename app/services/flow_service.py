"""Multi-step conversation flows driven by the state store.

Every update is handled statelessly: the active flow comes from
``get_state`` and each step writes the next state back (or clears it).
"""

from html import escape
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.schemas.conversation_state import (
    AwaitingEmailState,
    AwaitingVerificationState,
    ConversationStatePayload,
    SettingRadiusState,
    SharingFoodState,
    UpdatingProfileLocationState,
)
from app.schemas.telegram import TelegramCallbackQuery, TelegramMessage, TelegramUpdate, TelegramUser
from app.services import email_service
from app.services.auth_service import is_valid_email, reissue_code, start_email_verification, verify_code
from app.services.cache import EphemeralCache
from app.services.file_transfer_service import FileTransferService
from app.services.geocoding_service import GeocodingService
from app.services.listing_service import create_listing
from app.services.profile_service import (
    get_profile_by_telegram_id,
    get_profile_summary,
    invalidate_profile_cache,
    update_profile,
    warm_profile_cache,
)
from app.services.rate_limiter import InProcessRateLimiter
from app.services.state_machine import ConversationAction, SharingStep, description_received, photo_received
from app.services.state_service import get_state, set_state
from app.services.storage_service import StorageService
from app.services.telegram_service import TelegramService

logger = get_logger("flow_service")

CANCEL_BUTTON_TEXT = "❌ Cancel"
SHARE_AFTER_VERIFICATION = "share_food"
MIN_RADIUS_KM = 1
MAX_RADIUS_KM = 50

HELP_TEXT = (
    "🍏 <b>FoodShare</b>\n\n"
    "/share - share surplus food\n"
    "/radius - set your search radius\n"
    "/location - update your location\n"
    "/cancel - cancel the current step\n"
    "/start - register or sign in"
)

LOCATION_KEYBOARD = {
    "keyboard": [[{"text": "📍 Share Location", "request_location": True}], [{"text": CANCEL_BUTTON_TEXT}]],
    "resize_keyboard": True,
    "one_time_keyboard": True,
}
REMOVE_KEYBOARD = {"remove_keyboard": True}
BACK_TO_START_KEYBOARD = {"inline_keyboard": [[{"text": "⬅️ Back", "callback_data": "back_to_start"}]]}

LOCATION_NOT_FOUND_TEXT = (
    "❌ <b>Location not found</b>\n\n"
    "Please try:\n"
    "• A more specific address\n"
    '• City and country (e.g. "Prague, Czech Republic")\n'
    "• Or use the 📍 Share Location button"
)


class FlowService:
    def __init__(
        self,
        telegram: TelegramService,
        file_transfer: FileTransferService,
        storage: StorageService,
        cache: EphemeralCache,
        resend_limiter: InProcessRateLimiter,
        geocoder: GeocodingService,
        app_url: str,
    ):
        self.telegram = telegram
        self.file_transfer = file_transfer
        self.storage = storage
        self.cache = cache
        self.resend_limiter = resend_limiter
        self.geocoder = geocoder
        self.app_url = app_url.rstrip("/")

    async def handle_update(self, db: Session, update: TelegramUpdate) -> str:
        """Dispatch one update. Returns a short outcome label for logs and the webhook response."""
        if update.callback_query:
            return await self.handle_callback_query(db, update.callback_query)

        message = update.message
        if message is None or message.from_user is None or message.from_user.is_bot:
            return "ignored"

        text = (message.text or "").strip()
        if text.startswith("/") or text == CANCEL_BUTTON_TEXT:
            return await self.handle_command(db, message, text)
        if message.location:
            return await self.handle_location(db, message)
        if message.photo:
            return await self.handle_photo(db, message)
        if text:
            return await self.handle_text(db, message, text)
        return "ignored"

    # Commands

    async def handle_command(self, db: Session, message: TelegramMessage, text: str) -> str:
        user = message.from_user
        chat_id = message.chat.id
        command = text.split()[0].split("@")[0].lower() if text.startswith("/") else "/cancel"

        if command == "/start":
            return await self.start(db, chat_id, user)
        if command == "/cancel":
            set_state(db, user.id, None)
            await self.telegram.send_message(chat_id, "Cancelled. Use /help to see what I can do.", REMOVE_KEYBOARD)
            return "cancelled"
        if command == "/share":
            return await self.start_sharing(db, chat_id, user)
        if command == "/resend":
            return await self.resend_code(db, chat_id, user)
        if command == "/radius":
            return await self.start_protected_prompt(
                db, chat_id, user, SettingRadiusState(), f"Enter a search radius in km ({MIN_RADIUS_KM}-{MAX_RADIUS_KM}):"
            )
        if command == "/location":
            return await self.start_protected_prompt(
                db,
                chat_id,
                user,
                UpdatingProfileLocationState(),
                "Share your location with the button below.",
                reply_markup=LOCATION_KEYBOARD,
            )

        await self.telegram.send_message(chat_id, HELP_TEXT)
        return "help"

    async def start(self, db: Session, chat_id: int, user: TelegramUser) -> str:
        summary = get_profile_summary(db, user.id, self.cache)
        if summary and summary.email_verified:
            set_state(db, user.id, None)
            await self.telegram.send_message(chat_id, f"👋 Welcome back, {escape(user.first_name)}!\n\n{HELP_TEXT}")
            return "welcome"

        set_state(db, user.id, AwaitingEmailState())
        await self.telegram.send_message(
            chat_id,
            "👋 Welcome to FoodShare!\n\n📧 Please enter your email address to register or sign in.",
        )
        return "awaiting_email"

    async def start_sharing(self, db: Session, chat_id: int, user: TelegramUser) -> str:
        summary = get_profile_summary(db, user.id, self.cache)
        if not summary or not summary.email_verified:
            set_state(db, user.id, AwaitingEmailState(next_action=SHARE_AFTER_VERIFICATION))
            await self.telegram.send_message(
                chat_id,
                "🍏 To share food with the community, please register first!\n\n📧 Enter your email address:",
            )
            return "awaiting_email"

        set_state(db, user.id, SharingFoodState())
        await self.telegram.send_message(
            chat_id,
            "📸 <b>Share Food - Step 1/3</b>\n\nSend a photo of the food you want to share.",
            {"keyboard": [[{"text": CANCEL_BUTTON_TEXT}]], "resize_keyboard": True},
        )
        return "sharing_food"

    async def start_protected_prompt(
        self,
        db: Session,
        chat_id: int,
        user: TelegramUser,
        state: ConversationStatePayload,
        prompt: str,
        reply_markup: Optional[dict] = None,
    ) -> str:
        summary = get_profile_summary(db, user.id, self.cache)
        if not summary or not summary.email_verified:
            await self.telegram.send_message(chat_id, "🔒 Please complete registration first. Use /start.")
            return "registration_required"

        set_state(db, user.id, state)
        await self.telegram.send_message(chat_id, prompt, reply_markup)
        return state.action

    async def resend_code(self, db: Session, chat_id: int, user: TelegramUser) -> str:
        state = get_state(db, user.id)
        if not isinstance(state, AwaitingVerificationState):
            await self.telegram.send_message(chat_id, "There is no pending verification. Use /start to register.")
            return "no_pending_verification"

        limit = self.resend_limiter.check(user.id)
        if not limit.allowed:
            minutes = max(1, -(-limit.retry_after_seconds // 60))
            await self.telegram.send_message(chat_id, f"⏳ Too many requests. Try again in {minutes} min.")
            return "resend_limited"

        result = reissue_code(db, user.id)
        if not result.ok:
            if result.error_code == "locked":
                await self.telegram.send_message(chat_id, f"🔒 Too many attempts. Try again in {result.error} min.")
            else:
                set_state(db, user.id, None)
                await self.telegram.send_message(chat_id, "Registration not found. Use /start to begin again.")
            return result.error_code

        sent = await email_service.send_verification_email(state.email, result.value.code)
        set_state(db, user.id, state)
        if not sent:
            await self.telegram.send_message(chat_id, "⚠️ We couldn't send the email right now. Try /resend later.")
            return "email_failed"
        await self.telegram.send_message(chat_id, f"📧 New code sent to <code>{escape(state.email)}</code>.")
        return "code_resent"

    # Text steps

    async def handle_text(self, db: Session, message: TelegramMessage, text: str) -> str:
        user = message.from_user
        chat_id = message.chat.id
        state = get_state(db, user.id)

        if state is None:
            await self.telegram.send_message(chat_id, HELP_TEXT)
            return "help"

        if state.action == ConversationAction.AWAITING_EMAIL:
            return await self.handle_email_input(db, chat_id, user, text, state)

        if state.action in (ConversationAction.AWAITING_VERIFICATION, ConversationAction.AWAITING_VERIFICATION_LINK):
            return await self.handle_verification_code(db, chat_id, user, text, state)

        if state.action == ConversationAction.SETTING_RADIUS:
            return await self.handle_radius(db, chat_id, user, text)

        if state.action == ConversationAction.SHARING_FOOD:
            if state.step == SharingStep.DESCRIPTION:
                state.description = text
                state.step = description_received(state.step)
                set_state(db, user.id, state)
                await self.telegram.send_message(
                    chat_id,
                    "📍 <b>Share Food - Step 3/3</b>\n\nShare your location or type an address.",
                    LOCATION_KEYBOARD,
                )
                return "awaiting_location"
            if state.step == SharingStep.LOCATION:
                return await self.handle_address(db, chat_id, user, state, text)
            await self.telegram.send_message(chat_id, "📸 Please send a photo of the food first.")
            return "awaiting_photo"

        if state.action == ConversationAction.UPDATING_PROFILE_LOCATION:
            await self.telegram.send_message(chat_id, "📍 Please use the button to share your location.", LOCATION_KEYBOARD)
            return "awaiting_location"

        await self.telegram.send_message(chat_id, HELP_TEXT)
        return "help"

    async def handle_email_input(
        self,
        db: Session,
        chat_id: int,
        user: TelegramUser,
        text: str,
        state: AwaitingEmailState,
    ) -> str:
        if not is_valid_email(text):
            await self.telegram.send_message(
                chat_id,
                "❌ <b>Invalid email</b>\n\nPlease check the address and try again.\n"
                "Example: <code>user@example.com</code>",
                BACK_TO_START_KEYBOARD,
            )
            return "invalid_email"

        result = start_email_verification(db, user.id, user.first_name, text)
        if not result.ok:
            await self.telegram.send_message(
                chat_id,
                "❌ <b>Email already linked</b>\n\nThis email is connected to another Telegram account.",
                BACK_TO_START_KEYBOARD,
            )
            return result.error_code

        pending = result.value
        invalidate_profile_cache(self.cache, user.id)
        sent = await email_service.send_verification_email(pending.profile.email, pending.code)

        set_state(db, user.id, AwaitingVerificationState(email=pending.profile.email, next_action=state.next_action))

        text_out = (
            f"📧 We sent a 6-digit code to <code>{escape(pending.profile.email)}</code>.\n\n"
            "🔑 Enter the code here to continue.\n⏰ The code expires in 15 minutes."
        )
        if not sent:
            text_out += "\n\n⚠️ The email could not be sent right now. Use /resend to try again."
        await self.telegram.send_message(chat_id, text_out)
        return "awaiting_verification"

    async def handle_verification_code(
        self,
        db: Session,
        chat_id: int,
        user: TelegramUser,
        text: str,
        state: AwaitingVerificationState,
    ) -> str:
        result = verify_code(db, user.id, text)

        if not result.ok:
            if result.error_code == "invalid_code":
                await self.telegram.send_message(chat_id, f"❌ Wrong code. {result.error} attempts left.")
            elif result.error_code == "locked":
                await self.telegram.send_message(chat_id, f"🔒 Too many attempts. Try again in {result.error} min.")
            elif result.error_code == "expired":
                await self.telegram.send_message(chat_id, "⏰ This code has expired. Use /resend to get a new one.")
            else:
                set_state(db, user.id, None)
                await self.telegram.send_message(chat_id, "Registration not found. Use /start to begin again.")
            return result.error_code

        warm_profile_cache(self.cache, result.value)
        await self.telegram.send_message(chat_id, "✅ <b>Email verified!</b> Your account is ready.")

        if state.next_action == SHARE_AFTER_VERIFICATION:
            return await self.start_sharing(db, chat_id, user)

        set_state(db, user.id, None)
        await self.telegram.send_message(chat_id, HELP_TEXT)
        return "verified"

    async def handle_radius(self, db: Session, chat_id: int, user: TelegramUser, text: str) -> str:
        try:
            radius = float(text.replace(",", "."))
        except ValueError:
            radius = None

        if radius is None or not (MIN_RADIUS_KM <= radius <= MAX_RADIUS_KM):
            await self.telegram.send_message(
                chat_id, f"❌ Please enter a number between {MIN_RADIUS_KM} and {MAX_RADIUS_KM}."
            )
            return "invalid_radius"

        profile = get_profile_by_telegram_id(db, user.id)
        if profile is None:
            set_state(db, user.id, None)
            await self.telegram.send_message(chat_id, "Profile not found. Use /start.")
            return "no_profile"

        update_profile(db, profile, self.cache, search_radius_km=radius)
        set_state(db, user.id, None)
        await self.telegram.send_message(chat_id, f"✅ Search radius set to {radius:g} km.")
        return "radius_updated"

    # Media and location steps

    async def handle_photo(self, db: Session, message: TelegramMessage) -> str:
        user = message.from_user
        state = get_state(db, user.id)
        if not isinstance(state, SharingFoodState) or state.step != SharingStep.PHOTO:
            return "ignored"

        largest = message.photo[-1]
        state.photo = largest.file_id
        state.caption = message.caption or ""
        state.step = photo_received(state.step)
        set_state(db, user.id, state)

        await self.telegram.send_message(
            message.chat.id,
            "✅ <b>Photo received!</b>\n\n📝 <b>Share Food - Step 2/3</b>\n\n"
            "Tell people about your food: what is it, how much, and when to pick it up.",
        )
        return "awaiting_description"

    async def handle_location(self, db: Session, message: TelegramMessage) -> str:
        user = message.from_user
        chat_id = message.chat.id
        location = message.location
        state = get_state(db, user.id)

        if isinstance(state, SharingFoodState) and state.step == SharingStep.LOCATION:
            return await self.finish_listing(
                db, chat_id, user, state, latitude=location.latitude, longitude=location.longitude
            )

        if isinstance(state, UpdatingProfileLocationState):
            profile = get_profile_by_telegram_id(db, user.id)
            set_state(db, user.id, None)
            if profile is None:
                await self.telegram.send_message(chat_id, "Profile not found. Use /start.", REMOVE_KEYBOARD)
                return "no_profile"
            update_profile(db, profile, self.cache, latitude=location.latitude, longitude=location.longitude)
            await self.telegram.send_message(chat_id, "✅ Your profile location has been updated.", REMOVE_KEYBOARD)
            return "location_updated"

        return "ignored"

    async def handle_address(
        self, db: Session, chat_id: int, user: TelegramUser, state: SharingFoodState, address: str
    ) -> str:
        await self.telegram.send_message(chat_id, "📍 Looking up location...")
        coordinates = await self.geocoder.geocode(address)
        if coordinates is None:
            # State stays at the location step so the user can retry.
            await self.telegram.send_message(chat_id, LOCATION_NOT_FOUND_TEXT, LOCATION_KEYBOARD)
            return "location_not_found"

        return await self.finish_listing(
            db,
            chat_id,
            user,
            state,
            latitude=coordinates.latitude,
            longitude=coordinates.longitude,
            address=address,
        )

    async def finish_listing(
        self,
        db: Session,
        chat_id: int,
        user: TelegramUser,
        state: SharingFoodState,
        *,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        address: Optional[str] = None,
    ) -> str:
        await self.telegram.send_message(chat_id, "📍 Creating your post...")

        profile = get_profile_by_telegram_id(db, user.id)
        if profile is None:
            set_state(db, user.id, None)
            await self.telegram.send_message(chat_id, "Profile not found. Please start over with /start.")
            return "no_profile"

        images: list[str] = []
        photo_warning = ""
        if state.photo:
            image_url = await self.file_transfer.transfer(state.photo, user.id)
            if image_url and self.storage.is_public_url(image_url):
                images.append(image_url)
            else:
                if image_url:
                    logger.error(f"Transfer returned an unexpected URL: {image_url}")
                photo_warning = "\n\n⚠️ <i>Note: the photo could not be attached, but your post was created.</i>"

        description = state.description or state.caption or ""
        result = create_listing(
            db,
            profile.id,
            description,
            latitude=latitude,
            longitude=longitude,
            address=address,
            images=images,
        )
        set_state(db, user.id, None)

        if not result.ok:
            await self.telegram.send_message(
                chat_id, "❌ Failed to create the post. Please try again with /share", REMOVE_KEYBOARD
            )
            return result.error_code

        await self.telegram.send_message(
            chat_id,
            "🎉 <b>Food shared successfully!</b>\n\n"
            f'🔗 <a href="{self.app_url}/product/{result.value.id}">View your post</a>{photo_warning}',
            REMOVE_KEYBOARD,
        )
        return "listing_created"

    # Callback buttons

    async def handle_callback_query(self, db: Session, callback: TelegramCallbackQuery) -> str:
        await self.telegram.answer_callback(callback.id)
        chat_id = callback.message.chat.id if callback.message else callback.from_user.id

        if callback.data == "cancel":
            set_state(db, callback.from_user.id, None)
            await self.telegram.send_message(chat_id, "Cancelled.", REMOVE_KEYBOARD)
            return "cancelled"
        if callback.data == "back_to_start":
            return await self.start(db, chat_id, callback.from_user)

        logger.info(f"Unhandled callback data: {callback.data}")
        return "ignored"

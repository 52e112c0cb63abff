from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.services.state_machine import SharingStep


class AwaitingEmailState(BaseModel):
    action: Literal["awaiting_email"] = "awaiting_email"
    next_action: Optional[str] = None  # "share_food" resumes the share flow after verification


class AwaitingVerificationState(BaseModel):
    action: Literal["awaiting_verification", "awaiting_verification_link"] = "awaiting_verification"
    email: str
    next_action: Optional[str] = None


class SharingFoodState(BaseModel):
    action: Literal["sharing_food"] = "sharing_food"
    step: SharingStep = SharingStep.PHOTO
    photo: Optional[str] = None  # Telegram file_id of the largest photo size
    caption: Optional[str] = None
    description: Optional[str] = None


class SettingRadiusState(BaseModel):
    action: Literal["setting_radius"] = "setting_radius"


class UpdatingProfileLocationState(BaseModel):
    action: Literal["updating_profile_location"] = "updating_profile_location"


ConversationStatePayload = Annotated[
    Union[
        AwaitingEmailState,
        AwaitingVerificationState,
        SharingFoodState,
        SettingRadiusState,
        UpdatingProfileLocationState,
    ],
    Field(discriminator="action"),
]

conversation_state_adapter: TypeAdapter[ConversationStatePayload] = TypeAdapter(ConversationStatePayload)

from enum import Enum


class ConversationAction(str, Enum):
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_VERIFICATION = "awaiting_verification"
    AWAITING_VERIFICATION_LINK = "awaiting_verification_link"
    SHARING_FOOD = "sharing_food"
    SETTING_RADIUS = "setting_radius"
    UPDATING_PROFILE_LOCATION = "updating_profile_location"


class SharingStep(str, Enum):
    PHOTO = "photo"
    DESCRIPTION = "description"
    LOCATION = "location"


VALID_TRANSITIONS = {
    SharingStep.PHOTO: [SharingStep.DESCRIPTION],
    SharingStep.DESCRIPTION: [SharingStep.LOCATION],
    SharingStep.LOCATION: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: SharingStep, to_step: SharingStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def can_transition(from_step: SharingStep, to_step: SharingStep) -> bool:
    """Check if the share-food flow may move between the two steps."""
    allowed = VALID_TRANSITIONS.get(from_step, [])
    return to_step in allowed


def transition(from_step: SharingStep, to_step: SharingStep) -> SharingStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step


def photo_received(current_step: SharingStep) -> SharingStep:
    """Photo stored, ask for a description."""
    return transition(current_step, SharingStep.DESCRIPTION)


def description_received(current_step: SharingStep) -> SharingStep:
    """Description stored, ask for a location."""
    return transition(current_step, SharingStep.LOCATION)

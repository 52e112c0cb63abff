import pytest
from app.services.state_machine import (
    SharingStep,
    can_transition,
    transition,
    photo_received,
    description_received,
    InvalidTransitionError,
)


class TestValidTransitions:
    def test_photo_to_description(self):
        result = transition(SharingStep.PHOTO, SharingStep.DESCRIPTION)
        assert result == SharingStep.DESCRIPTION

    def test_description_to_location(self):
        result = transition(SharingStep.DESCRIPTION, SharingStep.LOCATION)
        assert result == SharingStep.LOCATION


class TestInvalidTransitions:
    def test_photo_to_location_skips_description(self):
        with pytest.raises(InvalidTransitionError):
            transition(SharingStep.PHOTO, SharingStep.LOCATION)

    def test_location_is_final(self):
        with pytest.raises(InvalidTransitionError):
            transition(SharingStep.LOCATION, SharingStep.PHOTO)

    def test_same_step(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(SharingStep.DESCRIPTION, SharingStep.DESCRIPTION)
        assert "description -> description" in str(exc_info.value)


class TestHelperFunctions:
    def test_photo_received(self):
        assert photo_received(SharingStep.PHOTO) == SharingStep.DESCRIPTION

    def test_photo_received_twice_fails(self):
        with pytest.raises(InvalidTransitionError):
            photo_received(SharingStep.DESCRIPTION)

    def test_description_received(self):
        assert description_received(SharingStep.DESCRIPTION) == SharingStep.LOCATION

    def test_description_before_photo_fails(self):
        with pytest.raises(InvalidTransitionError):
            description_received(SharingStep.PHOTO)


class TestCanTransition:
    def test_valid_returns_true(self):
        assert can_transition(SharingStep.PHOTO, SharingStep.DESCRIPTION) is True

    def test_invalid_returns_false(self):
        assert can_transition(SharingStep.PHOTO, SharingStep.LOCATION) is False

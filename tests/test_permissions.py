"""
Tests for carerelay.permissions -- role/command permission table.
"""

import pytest

from carerelay.models import Command, Role
from carerelay.permissions import check_permission, get_permissions_for_role, require_permission


class TestPermissions:
    def test_subject_can_confirm_relay(self):
        assert check_permission(Role.SUBJECT, Command.CONFIRM_RELAY) is True

    def test_caregiver_cannot_confirm_relay(self):
        assert check_permission(Role.CAREGIVER, Command.CONFIRM_RELAY) is False

    def test_other_cannot_confirm_relay(self):
        assert check_permission(Role.OTHER, Command.CONFIRM_RELAY) is False

    def test_only_subject_edits_profiles(self):
        assert check_permission(Role.SUBJECT, Command.SET_PROFILE) is True
        assert check_permission(Role.CAREGIVER, Command.SET_PROFILE) is False
        assert check_permission(Role.OTHER, Command.SET_PROFILE) is False

    def test_everyone_can_chat(self):
        for role in Role:
            assert check_permission(role, Command.CHAT) is True

    def test_require_permission_raises_on_denied(self):
        with pytest.raises(PermissionError):
            require_permission(Role.CAREGIVER, Command.CANCEL_RELAY)

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.SUBJECT, Command.CANCEL_RELAY)  # should not raise

    def test_get_permissions_covers_every_command(self):
        perms = get_permissions_for_role(Role.OTHER)
        assert set(perms) == set(Command)
        assert [c for c, allowed in perms.items() if allowed] == [Command.CHAT]

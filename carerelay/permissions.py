"""
Role permissions for mediation commands.

The router resolves a participant's role once per event and consults this
table before dispatching any command.  A command that the role may not
issue is treated as ordinary conversation instead.

**Roles:**

* CAREGIVER -- converses; their turns may produce relay decisions.
* SUBJECT   -- converses, confirms or cancels proposals, edits profiles,
  and requests digests of the Caregiver's conversation.
* OTHER     -- converses only; never produces or receives relays.
"""

from __future__ import annotations

from carerelay.models import Command, Role


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

# Maps (role, command) -> allowed
_PERMISSIONS: dict[tuple[Role, Command], bool] = {
    (Role.CAREGIVER, Command.CHAT): True,
    (Role.CAREGIVER, Command.CONFIRM_RELAY): False,
    (Role.CAREGIVER, Command.CANCEL_RELAY): False,
    (Role.CAREGIVER, Command.SET_PROFILE): False,
    (Role.CAREGIVER, Command.REQUEST_DIGEST): False,
    (Role.SUBJECT, Command.CHAT): True,
    (Role.SUBJECT, Command.CONFIRM_RELAY): True,
    (Role.SUBJECT, Command.CANCEL_RELAY): True,
    (Role.SUBJECT, Command.SET_PROFILE): True,
    (Role.SUBJECT, Command.REQUEST_DIGEST): True,
    (Role.OTHER, Command.CHAT): True,
    (Role.OTHER, Command.CONFIRM_RELAY): False,
    (Role.OTHER, Command.CANCEL_RELAY): False,
    (Role.OTHER, Command.SET_PROFILE): False,
    (Role.OTHER, Command.REQUEST_DIGEST): False,
}


def check_permission(role: Role, command: Command) -> bool:
    """Whether ``role`` may issue ``command``; unknown pairs are denied."""
    return _PERMISSIONS.get((role, command), False)


def require_permission(role: Role, command: Command) -> None:
    """Raise ``PermissionError`` unless ``role`` may issue ``command``."""
    if not check_permission(role, command):
        raise PermissionError(
            f"Role '{role.value}' is not permitted to issue '{command.value}'."
        )


def get_permissions_for_role(role: Role) -> dict[Command, bool]:
    return {
        command: allowed
        for (r, command), allowed in _PERMISSIONS.items()
        if r == role
    }

"""Role claim extraction from inbound messages."""

from src.relay.protocol import DecodedMessage
from src.relay.roles import Role, RoleSet


def claimed_name(message: DecodedMessage) -> str | None:
    """Return the role name a message claims, without validating it.

    Accepted shapes:
        {"type": "connect", "user": <name>}
        {"action": "identify", "device": <name>}
        {"type": "identify", "role": <name>}
        <name>  (bare text, only when the frame is not a JSON object)
    """
    data = message.data
    if data is None:
        return message.raw

    if data.get("type") == "connect" and data.get("user"):
        return _as_str(data["user"])
    if data.get("action") == "identify" and data.get("device"):
        return _as_str(data["device"])
    if data.get("type") == "identify" and data.get("role"):
        return _as_str(data["role"])
    return None


def resolve_claim(message: DecodedMessage, roles: RoleSet) -> Role | None:
    """Resolve the role a message claims, or None if it claims no known role."""
    name = claimed_name(message)
    if name is None:
        return None
    return roles.parse(name)


def expected_formats(roles: RoleSet) -> list[str]:
    """Identification shapes listed in diagnostic replies."""
    return [
        roles.name_a,
        roles.name_b,
        f'{{"type":"connect","user":"{roles.name_a}"}}',
        f'{{"action":"identify","device":"{roles.name_a}"}}',
        f'{{"type":"identify","role":"{roles.name_a}"}}',
    ]


def _as_str(value: object) -> str | None:
    return value if isinstance(value, str) else None

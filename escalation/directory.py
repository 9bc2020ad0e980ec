"""Role-to-recipient resolution for escalation steps."""
import logging
from typing import Protocol, runtime_checkable

from models.escalation import Recipient

logger = logging.getLogger("mspalerts.escalation.directory")


@runtime_checkable
class RoleDirectory(Protocol):
    def resolve(self, roles) -> list: ...


class StaticDirectory:
    """Directory backed by the ``directory.roles`` config section.

    Example::

        directory:
          roles:
            manager:
              - {id: m1, name: Mia Lopez, email: mia@example.com, phone: "+15550100"}
    """

    def __init__(self, config=None):
        roles = (config or {}).get("directory", {}).get("roles", {}) or {}
        self._members = {}
        for role, people in roles.items():
            members = []
            for p in people or []:
                if not p.get("id"):
                    logger.warning(f"Directory entry without id under role {role}: {p}")
                    continue
                members.append(Recipient(
                    id=str(p["id"]),
                    name=p.get("name", ""),
                    email=p.get("email"),
                    phone=p.get("phone"),
                    realtime_id=p.get("realtime_id") or str(p["id"]),
                    role=role,
                ))
            self._members[role] = members

    def resolve(self, roles):
        """Recipients holding any of ``roles``, de-duplicated by id in role order."""
        seen = set()
        recipients = []
        for role in roles or []:
            for member in self._members.get(role, []):
                if member.id in seen:
                    continue
                seen.add(member.id)
                recipients.append(member)
        return recipients

    def roles(self):
        return sorted(self._members)

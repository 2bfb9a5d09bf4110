import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from .ws_manager import ConnectionManager, Role

log = logging.getLogger("relay")


class NoReceiversError(RuntimeError):
    """No receiver-role connection is open, so the command cannot reach any device."""


@dataclass(frozen=True)
class RelayResult:
    command_id: str
    delivered: int


class CommandRelay:
    def __init__(self, manager: ConnectionManager) -> None:
        self.manager = manager

    async def relay(self, device_id: str, command: str = "acknowledge") -> RelayResult:
        if self.manager.count(Role.RECEIVER) == 0:
            raise NoReceiversError("No receiver connected")

        command_id = f"cmd_{uuid.uuid4().hex[:10]}"
        message = {
            "kind": "command",
            "commandId": command_id,
            "command": command,
            "deviceId": device_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivered = await self.manager.send_to_role(Role.RECEIVER, message)
        if delivered == 0:
            # every receiver closed between the check and the send
            raise NoReceiversError("No receiver connected")
        log.info("Relayed %s %s for %s to %d receiver(s)", command, command_id, device_id, delivered)
        return RelayResult(command_id=command_id, delivered=delivered)

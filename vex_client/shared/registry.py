"""
Lookup of live orchestrators by session id.

Owned by the application and handed to both the orchestrators (which register
themselves once their session id is known) and the webhook receiver (which only
needs `get`).
"""
from typing import TYPE_CHECKING, Dict, Optional
from loguru import logger

if TYPE_CHECKING:
    from vex_client.client.orchestrator import SessionOrchestrator


class SessionRegistry:
    def __init__(self):
        self._instances: Dict[str, "SessionOrchestrator"] = {}

    def register(self, session_id: str, instance: "SessionOrchestrator") -> None:
        self._instances[session_id] = instance
        logger.debug(f"session_id={session_id} event=registered")

    def unregister(self, session_id: str, instance: Optional["SessionOrchestrator"] = None) -> None:
        current = self._instances.get(session_id)
        if current is None:
            return
        if instance is not None and current is not instance:
            return
        del self._instances[session_id]
        logger.debug(f"session_id={session_id} event=unregistered")

    def get(self, session_id: str) -> Optional["SessionOrchestrator"]:
        return self._instances.get(session_id)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._instances

    def __len__(self) -> int:
        return len(self._instances)

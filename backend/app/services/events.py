# app/services/events.py
"""Inbound trigger messages and the validating router that dispatches them."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from app.core.errors import MessageRouteNotFoundError

logger = logging.getLogger(__name__)

CD_TRIGGER_TOPIC = "CD-TRIGGER"

ValidateMsg = Callable[["PubSubMsg"], bool]


@dataclass
class PubSubMsg:
    """A message as delivered by the message bus (at least once)."""

    msg_id: str = ""
    msg_deliver_count: int = 1
    data: Dict[str, Any] = field(default_factory=dict)


class TriggerMessageRouter:
    """Routes messages to handlers after every registered validator accepts them."""

    def __init__(self):
        self._routes: Dict[str, Callable[[PubSubMsg], Any]] = {}
        self._validators: Dict[str, List[ValidateMsg]] = {}

    def register_route(
        self,
        topic: str,
        handler: Callable[[PubSubMsg], Any],
        validators: Optional[List[ValidateMsg]] = None,
    ):
        self._routes[topic] = handler
        self._validators[topic] = list(validators or [])

    def get_route(self, topic: str) -> Callable[[PubSubMsg], Any]:
        if topic not in self._routes:
            raise MessageRouteNotFoundError(f"Route '{topic}' not found.")
        return self._routes[topic]

    def dispatch(self, topic: str, msg: PubSubMsg) -> Any:
        """Returns False without calling the handler when a validator rejects msg."""
        handler = self.get_route(topic)
        for validate in self._validators.get(topic, []):
            if not validate(msg):
                logger.warning(
                    f"Message {msg.msg_id} on {topic} rejected (delivery {msg.msg_deliver_count})"
                )
                return False
        return handler(msg)

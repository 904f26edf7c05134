"""Ordered, user-visible message history with role coalescing."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Iterator, Literal, get_args

from toolstream.engine.events import Role

DeliveryState = Literal["in_progress", "done"]

ROLES: tuple[str, ...] = get_args(Role)


@dataclass
class Message:
    role: Role
    content: str = ""
    delivery_state: DeliveryState = "in_progress"

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "state": self.delivery_state}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        role = data.get("role")
        if role not in ROLES:
            role = "system"
        state = "in_progress" if data.get("state") == "in_progress" else "done"
        return cls(role=role, content=str(data.get("content") or ""), delivery_state=state)


class Transcript:
    """Message list owned by a single session.

    Appending text for the role of the last message extends that message, so a
    token-streamed reply stays one message; any other role starts a new one and
    finalizes its predecessor. ``on_change`` fires after every mutation.
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._messages: list[Message] = []
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.snapshot())

    @property
    def last(self) -> Message | None:
        return replace(self._messages[-1]) if self._messages else None

    def append(self, role: Role, text: str) -> None:
        last = self._messages[-1] if self._messages else None
        if last is not None and last.role == role:
            last.content += text
            last.delivery_state = "in_progress"
        else:
            if last is not None:
                last.delivery_state = "done"
            self._messages.append(Message(role=role, content=text))
        self._changed()

    def append_block(self, role: Role, text: str) -> None:
        """Append text and mark the resulting message done."""

        self.append(role, text)
        self._messages[-1].delivery_state = "done"

    def finalize_last(self) -> None:
        if not self._messages:
            return
        last = self._messages[-1]
        if last.delivery_state == "done":
            return
        last.delivery_state = "done"
        self._changed()

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(replace(message) for message in self._messages)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [message.to_dict() for message in self._messages]

    def load(self, messages: Iterable[Message | dict[str, Any]]) -> None:
        """Replace the contents with previously saved messages."""

        self._messages = [
            replace(item) if isinstance(item, Message) else Message.from_dict(item) for item in messages
        ]
        self._changed()

    def clear(self) -> None:
        if not self._messages:
            return
        self._messages.clear()
        self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()


__all__ = ["DeliveryState", "Message", "ROLES", "Transcript"]

"""Conversation assembly and the per-run conversation state."""

from __future__ import annotations

from typing import Any, Iterable, Iterator, List, Optional, Union

from ..core.types import Message


class ConversationState:
    """Ordered, append-only message list owned by one run."""

    __slots__ = ("_messages",)

    def __init__(self, messages: Optional[Iterable[Message]] = None) -> None:
        self._messages: List[Message] = list(messages or ())

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def to_wire(self) -> List[dict[str, Any]]:
        return [message.to_dict() for message in self._messages]


def _present(value: Optional[str]) -> bool:
    return value is not None and bool(value.strip())


def assemble_conversation(
    system_prompt: Optional[str] = None,
    context: Optional[str] = None,
    prior_messages: Optional[Iterable[Union[Message, dict[str, Any]]]] = None,
) -> ConversationState:
    """Build the initial conversation for a run.

    Order is fixed: the system prompt, then the caller context as a user
    message, then the prior messages as given. Blank prompt or context is
    treated as absent.
    """
    state = ConversationState()
    if _present(system_prompt):
        state.append(Message(role="system", content=system_prompt))
    if _present(context):
        state.append(Message(role="user", content=context))
    for raw in prior_messages or ():
        if raw is None:
            continue
        state.append(Message.from_dict(raw))
    return state

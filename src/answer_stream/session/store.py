"""In-memory thread and message persistence."""

from __future__ import annotations

import dataclasses
import threading
from typing import Any

from answer_stream.types import Answer, Message, Thread, new_id, utc_now


class ThreadStore:
    """Stores threads and their ordered messages.

    Appends are atomic: concurrent streams on one thread may land in either
    order, never interleaved mid-write.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._threads: dict[str, Thread] = {}

    def create_thread(
        self,
        name: str,
        *,
        content_filter: dict[str, Any] | None = None,
        shared: bool = False,
        thread_id: str | None = None,
    ) -> Thread:
        thread = Thread(
            id=thread_id or new_id(),
            name=name,
            content_filter=content_filter,
            shared=shared,
        )
        with self._lock:
            if thread.id in self._threads:
                raise ValueError(f"Thread already exists: {thread.id}")
            self._threads[thread.id] = thread
        return thread

    def get_thread(self, thread_id: str) -> Thread:
        thread = self._threads.get(thread_id)
        if thread is None:
            raise KeyError(f"Thread not found: {thread_id}")
        return thread

    def list_threads(self, limit: int = 50) -> list[Thread]:
        with self._lock:
            threads = sorted(self._threads.values(), key=lambda t: t.updated_at, reverse=True)
        return threads[:limit]

    def messages(self, thread_id: str) -> list[Message]:
        thread = self.get_thread(thread_id)
        with self._lock:
            return list(thread.messages)

    def last_message_id(self, thread_id: str) -> str | None:
        thread = self.get_thread(thread_id)
        with self._lock:
            return thread.messages[-1].id if thread.messages else None

    def append_message(self, message: Message) -> None:
        thread = self.get_thread(message.thread_id)
        with self._lock:
            thread.messages.append(message)
            thread.updated_at = utc_now()

    def find_answer(self, message_id: str) -> Answer:
        with self._lock:
            for thread in self._threads.values():
                for message in thread.messages:
                    if message.id == message_id and isinstance(message, Answer):
                        return message
        raise KeyError(f"Answer not found: {message_id}")

    def attach_next_steps(self, message_id: str, next_steps: list[str]) -> Answer:
        """Swap the stored answer for a copy carrying ``next_steps``."""
        with self._lock:
            for thread in self._threads.values():
                for index, message in enumerate(thread.messages):
                    if message.id == message_id and isinstance(message, Answer):
                        updated = dataclasses.replace(message, next_steps=tuple(next_steps))
                        thread.messages[index] = updated
                        thread.updated_at = utc_now()
                        return updated
        raise KeyError(f"Answer not found: {message_id}")

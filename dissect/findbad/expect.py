from __future__ import annotations

import asyncio
import codecs
import logging
import os
from collections import deque

from dissect.findbad.exceptions import SessionClosedError, SessionDisposedError

log = logging.getLogger(__name__)
log.setLevel(os.getenv("DISSECT_LOG_FINDBAD", "CRITICAL"))

READ_SIZE = 64 * 1024


class Expect:
    """Split an interactive output stream into responses delimited by a prompt.

    Every response is the text received since the previous prompt, up to (but excluding) the next one.
    Responses are handed out strictly in the order :meth:`next` was called: the Nth pending call gets
    the Nth response to arrive. There is no correlation with the command that caused a response, so the
    caller must make sure commands are written in the same order as it calls :meth:`next`.
    """

    def __init__(self, prompt: str):
        if not prompt:
            raise ValueError("Prompt can't be empty")

        self.prompt = prompt
        self.found: deque[str] = deque()

        self._pending: deque[asyncio.Future[str]] = deque()
        self._since_last_match = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._error: SessionClosedError | None = None
        self._task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"<Expect prompt={self.prompt!r} found={len(self.found)} pending={len(self._pending)}>"

    @property
    def closed(self) -> bool:
        return self._error is not None

    def next(self) -> asyncio.Future[str]:
        """Return an awaitable for the next response.

        The future is registered before this method returns, so two calls made without yielding to the
        event loop in between are always resolved in call order.
        """
        fut = asyncio.get_running_loop().create_future()

        if self.found:
            fut.set_result(self.found.popleft())
        elif self._error is not None:
            fut.set_exception(self._error)
        else:
            self._pending.append(fut)

        return fut

    def feed_data(self, data: bytes) -> None:
        if self._error is not None:
            return

        self._since_last_match += self._decoder.decode(data)
        self._look_for_prompt()

    def feed_eof(self) -> None:
        self._since_last_match += self._decoder.decode(b"", final=True)
        self._look_for_prompt()
        self._fail(SessionClosedError("Stream ended before next prompt was found"))

    def set_exception(self, exc: BaseException) -> None:
        error = SessionClosedError(f"Stream failed: {exc}")
        error.__cause__ = exc
        self._fail(error)

    def attach(self, reader: asyncio.StreamReader) -> asyncio.Task:
        """Start pumping ``reader`` into this object from a background task."""
        self._task = asyncio.get_running_loop().create_task(self._pump(reader))
        return self._task

    def dispose(self) -> None:
        """Stop reading and fail every outstanding and future :meth:`next` call."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

        # A disposed session stays disposed, even if the stream had already ended
        self.found.clear()
        self._error = None
        self._fail(SessionDisposedError("Expect disposed"))

    async def _pump(self, reader: asyncio.StreamReader) -> None:
        try:
            while chunk := await reader.read(READ_SIZE):
                self.feed_data(chunk)
        except Exception as e:
            log.debug("Error while reading from stream", exc_info=True)
            self.set_exception(e)
        else:
            self.feed_eof()

    def _look_for_prompt(self) -> None:
        while (index := self._since_last_match.find(self.prompt)) != -1:
            match = self._since_last_match[:index]
            self._since_last_match = self._since_last_match[index + len(self.prompt) :]
            self._resolve(match)

    def _resolve(self, response: str) -> None:
        if self._pending:
            fut = self._pending.popleft()
            # A cancelled waiter still consumes its response
            if not fut.done():
                fut.set_result(response)
        else:
            self.found.append(response)

    def _fail(self, error: SessionClosedError) -> None:
        if self._error is not None:
            return

        self._error = error
        while self._pending:
            fut = self._pending.popleft()
            if not fut.done():
                fut.set_exception(error)

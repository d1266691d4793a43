"""
Agent command protocol over a persistent WebSocket.

Requests are JSON objects {id, action, ...params}; the Agent answers each one
with {id, ok, error?, ...result}. Replies arrive asynchronously and are
matched to the waiting caller by id. Messages without an id are unsolicited
events and go to event subscribers instead.
"""
import json
import asyncio
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from config.settings import COMMAND_TIMEOUT, agent_url
from .errors import AgentConnectionError, CommandError, CommandTimeout


def _quiet(msg: str, data: Optional[dict] = None):
    pass


class ProtocolClient:
    """
    Correlates Agent commands with their replies.

    One client per scene run. Ids increase monotonically and are never
    reused; at most one pending reply exists per id.
    """

    def __init__(self, url: Optional[str] = None, timeout: float = COMMAND_TIMEOUT,
                 dry_run: bool = False, log: Callable = _quiet):
        self.url = url or agent_url()
        self.timeout = timeout
        self.dry_run = dry_run
        self.log = log

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._next_id = 0
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._event_handlers: list[Callable[[dict], None]] = []
        self._background: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self):
        """Open the connection to the Agent."""
        if self.dry_run:
            self.log("Dry run: not connecting to agent")
            return

        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            raise AgentConnectionError(f"Failed to connect to agent at {self.url}: {e}") from e

        self._reader = asyncio.create_task(self._read_loop())
        self.log(f"Connected to agent at {self.url}")

    async def send(self, action: str, params: Optional[dict] = None) -> dict:
        """
        Send a command and wait for its reply.

        Returns the reply payload. Raises CommandError when the Agent answers
        ok: false and CommandTimeout when nothing arrives in time; a timeout
        leaves the connection open for other commands.
        """
        params = params or {}
        self._next_id += 1
        msg_id = self._next_id

        self.log(f"→ {action}", params)

        if self.dry_run:
            return {"ok": True}

        if self._ws is None:
            raise AgentConnectionError("Not connected")

        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (action, future)

        try:
            await self._ws.send(json.dumps({**params, "id": msg_id, "action": action}))
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError:
            raise CommandTimeout(action, self.timeout) from None
        except ConnectionClosed as e:
            raise AgentConnectionError(f"Connection lost while sending {action}: {e}") from e
        finally:
            self._pending.pop(msg_id, None)

    def notify(self, action: str, params: Optional[dict] = None):
        """
        Fire-and-forget command.

        The reply is not awaited by the caller and any failure is dropped;
        a lost notification has no effect on the run.
        """
        if self.dry_run or self._ws is None:
            return

        async def _deliver():
            try:
                await self.send(action, params)
            except Exception as e:
                self.log(f"notify {action} dropped: {e}")

        task = asyncio.create_task(_deliver())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def on_event(self, handler: Callable[[dict], None]):
        """Subscribe to unsolicited Agent messages (no id)."""
        self._event_handlers.append(handler)

    async def close(self):
        """Close the connection and fail anything still waiting."""
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

        self._fail_pending("Connection closed")

        background = list(self._background)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except ConnectionClosed:
            pass
        finally:
            self._fail_pending("Connection to agent lost")

    def _dispatch(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return

        if not isinstance(message, dict):
            return

        msg_id = message.get("id")
        if msg_id is None:
            for handler in self._event_handlers:
                handler(message)
            return

        if not isinstance(msg_id, int) or isinstance(msg_id, bool):
            return

        entry = self._pending.pop(msg_id, None)
        if entry is None:
            return

        action, future = entry
        if future.done():
            return

        if message.get("ok"):
            future.set_result(message)
        else:
            future.set_exception(CommandError(action, message.get("error") or "Command failed"))

    def _fail_pending(self, reason: str):
        pending, self._pending = self._pending, {}
        for action, future in pending.values():
            if not future.done():
                future.set_exception(AgentConnectionError(f"{reason} while waiting for {action}"))

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from agent.control import ControlSession
from common.protocol import build_result

Handler = Callable[[ControlSession, Any], Awaitable[Any]]


@dataclass(slots=True)
class Route:
    """How one command type is handled.

    ``inline`` handlers run on the read loop and must only do trivial work.
    ``result`` is the prefix of the correlated ``<result>Result`` reply;
    ``None`` means fire-and-forget.
    """

    handler: Handler
    inline: bool = False
    result: str | None = None


def request_id_of(payload: Any) -> str:
    if isinstance(payload, dict):
        value = payload.get("requestId")
        if value is not None:
            return str(value)
    return ""


class CommandDispatcher:
    def __init__(self, routes: dict[str, Route]):
        self.logger = logging.getLogger("agent.dispatch")
        self.routes = routes

    async def dispatch(self, session: ControlSession, command: dict[str, Any]) -> None:
        msg_type = str(command.get("type", ""))
        route = self.routes.get(msg_type)
        if route is None:
            self.logger.debug("ignored unknown command type=%s", msg_type)
            return
        payload = command.get("data")
        if route.inline:
            await self._invoke(session, msg_type, route, payload)
            return
        session.spawn(self._invoke(session, msg_type, route, payload), name=f"cmd-{msg_type}")

    async def _invoke(self, session: ControlSession, msg_type: str, route: Route, payload: Any) -> None:
        request_id = request_id_of(payload)
        try:
            data = await route.handler(session, payload)
        except Exception as exc:
            self.logger.warning("command failed type=%s request_id=%s err=%s", msg_type, request_id, exc)
            data = {"success": False, "message": str(exc) or type(exc).__name__}
        if route.result is None or not request_id:
            return
        try:
            await session.send_json(build_result(route.result, request_id, data))
        except ConnectionError as exc:
            self.logger.warning("result not delivered type=%s request_id=%s err=%s", msg_type, request_id, exc)

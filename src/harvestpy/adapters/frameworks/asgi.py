"""ASGI middleware that wraps each HTTP request in a Transaction.

Framework-agnostic: works with any ASGI server (uvicorn, hypercorn,
daphne) and any ASGI application.
"""

import fnmatch
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from harvestpy.agent import Agent

# ASGI type aliases
Scope = dict[str, Any]
Receive = Callable[[], Coroutine[Any, Any, dict[str, Any]]]
Send = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
ASGIApp = Callable[[Scope, Receive, Send], Coroutine[Any, Any, None]]


def _transaction_name(scope: Scope) -> str:
    """Provisional name from the route, falling back to the raw path."""
    route = scope.get("route")
    path = getattr(route, "path", None) or scope["path"]
    return f"WebTransaction/Uri{path}"


class ASGITransactionMiddleware:
    """ASGI middleware that records one transaction per request.

    The transaction is bound to the request's context for the duration
    of the call, so ``agent.notice_error`` and forwarded logs attach to it.
    """

    def __init__(
        self,
        app: ASGIApp,
        agent: "Agent",
        exclude_paths: list[str] | None = None,
    ) -> None:
        """Initialize the middleware with a wrapped app and an agent.

        Args:
            app: The ASGI application to wrap.
            agent: Agent receiving the finished transactions.
            exclude_paths: Paths to leave untraced. Supports exact matches
                and wildcard patterns (e.g., "/internal/*").
        """
        self.app = app
        self.agent = agent
        self.exclude_paths = exclude_paths or []

    def _path_excluded(self, path: str) -> bool:
        """Check if path matches any pattern in exclude_paths."""
        return any(fnmatch.fnmatch(path, pattern) for pattern in self.exclude_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI callable interface that processes requests through the wrapped app."""
        if scope["type"] != "http" or self._path_excluded(scope["path"]):
            await self.app(scope, receive, send)
            return

        transaction = self.agent.create_transaction(url=scope["path"])
        transaction.partial_name = _transaction_name(scope)
        transaction.trace.agent_attributes["request.method"] = scope["method"]
        captured: dict[str, Any] = {"status": None}

        async def wrapped_send(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                captured["status"] = message["status"]
            await send(message)

        token = self.agent.context.bind(transaction)
        try:
            await self.app(scope, receive, wrapped_send)
        except Exception as e:
            transaction.add_exception(e)
            captured["status"] = 500
            raise
        finally:
            self.agent.context.unbind(token)
            status = captured["status"]
            if status is not None:
                transaction.status_code = status
                transaction.trace.agent_attributes["http.statusCode"] = status
            transaction.end()

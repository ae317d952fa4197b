"""Composable middleware around resource queries and writes.

A middleware is an async callable ``middleware(command, next_)`` that may
inspect or rewrite the command, call ``next_`` zero or more times and
inspect or rewrite the result. :func:`with_middleware` wraps a resource so
that ``query`` and ``write`` (and everything built on ``query``, such as
``query_ascii_values`` and ``get_identity``) run through the chain. The
first middleware listed is the outermost.

Typical usage::

    from hwtest_visa.middleware import logging_middleware, retry_middleware, with_middleware

    scope = with_middleware(
        await rm.open_resource("TCPIP0::10.0.0.5::5025::SOCKET"),
        logging_middleware(),
        retry_middleware(max_retries=2),
    )
    await scope.query("*IDN?")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from hwtest_visa.errors import NotOpenError, ValidationError, VisaError
from hwtest_visa.resource import MessageBasedResource

logger = logging.getLogger(__name__)

Next = Callable[[str], Awaitable[Any]]
Middleware = Callable[[str, Next], Awaitable[Any]]

_MAX_LOGGED_RESPONSE = 200


def _compose(middleware: tuple[Middleware, ...], terminal: Next) -> Next:
    handler = terminal
    for layer in reversed(middleware):

        def bind(layer: Middleware, inner: Next) -> Next:
            async def call(command: str) -> Any:
                return await layer(command, inner)

            return call

        handler = bind(layer, handler)
    return handler


class MiddlewareResource(MessageBasedResource):
    """A resource whose ``query`` and ``write`` pass through middleware.

    Shares the transport of the wrapped resource; every other operation
    behaves exactly as on the wrapped resource. Closing this object closes
    the wrapped resource.

    Args:
        resource: The resource to wrap.
        middleware: Middleware in outermost-first order.
    """

    def __init__(self, resource: MessageBasedResource, middleware: tuple[Middleware, ...]) -> None:
        super().__init__(resource.transport, resource.resource_name, max_block_size=resource.max_block_size)
        self._inner = resource
        self._middleware = middleware

    @property
    def inner(self) -> MessageBasedResource:
        """The wrapped resource."""
        return self._inner

    @property
    def middleware(self) -> tuple[Middleware, ...]:
        """The middleware chain, outermost first."""
        return self._middleware

    async def query(self, command: str, delay: float | None = None) -> str:
        async def terminal(cmd: str) -> str:
            return await self._inner.query(cmd, delay)

        return await _compose(self._middleware, terminal)(command)

    async def write(self, command: str) -> None:
        async def terminal(cmd: str) -> None:
            await self._inner.write(cmd)

        await _compose(self._middleware, terminal)(command)

    async def close(self) -> None:
        await self._inner.close()


def with_middleware(resource: MessageBasedResource, *middleware: Middleware) -> MiddlewareResource:
    """Wrap *resource* so that query and write run through *middleware*.

    Wrapping an already wrapped resource appends to its chain (the new
    middleware sit inside the existing ones).
    """
    if isinstance(resource, MiddlewareResource):
        return MiddlewareResource(resource.inner, resource.middleware + middleware)
    return MiddlewareResource(resource, middleware)


# ---------------------------------------------------------------------------
# Built-in middleware
# ---------------------------------------------------------------------------


def logging_middleware(logger: logging.Logger | None = None, level: int = logging.DEBUG) -> Middleware:
    """Log every command, its response and any error.

    Args:
        logger: Logger to use (default: the ``hwtest_visa.middleware`` logger).
        level: Level for command and response records. Errors are logged
            at WARNING.
    """
    target = logger if logger is not None else logging.getLogger(__name__)

    async def middleware(command: str, next_: Next) -> Any:
        target.log(level, "> %s", command)
        try:
            result = await next_(command)
        except Exception as exc:
            target.warning("! %s: %s", command, exc)
            raise
        if result is not None:
            text = str(result)
            if len(text) > _MAX_LOGGED_RESPONSE:
                text = text[:_MAX_LOGGED_RESPONSE] + "..."
            target.log(level, "< %s", text)
        return result

    return middleware


def is_transient_error(exc: BaseException) -> bool:
    """Default retry predicate: timeouts and recoverable I/O errors.

    Errors that need the resource reopened, calls on a closed resource
    and invalid arguments are not worth retrying.
    """
    if isinstance(exc, (NotOpenError, ValidationError)):
        return False
    return isinstance(exc, VisaError) and not exc.requires_reopen


def retry_middleware(
    max_retries: int = 3,
    retry_delay: float = 0.1,
    is_retryable: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[BaseException, int], None] | None = None,
) -> Middleware:
    """Retry failed commands.

    Args:
        max_retries: Retries after the first attempt.
        retry_delay: Seconds to wait before each retry.
        is_retryable: Predicate on the raised exception (default
            :func:`is_transient_error`).
        on_retry: Called with the exception and the 1-based retry number
            before each retry.

    Returns:
        The middleware. The last exception propagates once retries are
        exhausted or the predicate rejects it.
    """
    if max_retries < 0:
        raise ValidationError(f"max_retries must be >= 0, got {max_retries}")
    check = is_retryable or is_transient_error

    async def middleware(command: str, next_: Next) -> Any:
        attempt = 0
        while True:
            try:
                return await next_(command)
            except Exception as exc:
                if attempt >= max_retries or not check(exc):
                    raise
                attempt += 1
                logger.debug("Retrying %r (%d/%d) after %s", command, attempt, max_retries, exc)
                if on_retry is not None:
                    on_retry(exc, attempt)
                await asyncio.sleep(retry_delay)

    return middleware


def response_transform_middleware(transform: Callable[[str], str]) -> Middleware:
    """Apply *transform* to every text response (writes are untouched)."""

    async def middleware(command: str, next_: Next) -> Any:
        result = await next_(command)
        if isinstance(result, str):
            return transform(result)
        return result

    return middleware


def command_transform_middleware(transform: Callable[[str], str]) -> Middleware:
    """Apply *transform* to every command before it is sent."""

    async def middleware(command: str, next_: Next) -> Any:
        return await next_(transform(command))

    return middleware

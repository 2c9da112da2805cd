# -*- encoding: utf-8 -*-
"""
idbstore.bridge - convert host request/transaction events into awaitables.

Each helper settles a single asyncio future from the first relevant event
and ignores later ones. Handlers are assigned as on<event> attributes,
wrapped with host.proxy().

Memory Safety:
- Every proxy is detached from its target and destroyed in a finally block
  once the future settles, including on timeout or cancellation.

Transaction Safety:
- walk_cursor() advances the cursor from inside the synchronous onsuccess
  callback, so the transaction stays active for the whole walk. Never await
  anything else between cursor steps.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from . import ui_log
from .errors import HostRequestError, TransactionAbortedError
from .hosts.base import Host


def error_from(error: Any, default: str) -> HostRequestError:
    """Build a HostRequestError from a host error object (DOMException or Python)."""
    if isinstance(error, HostRequestError):
        return error
    if error is None or type(error).__name__ in ("JsNull", "JsUndefined"):
        return HostRequestError(default)
    name = getattr(error, "name", None)
    message = getattr(error, "message", None) or str(error) or default
    return HostRequestError(str(message), name=str(name) if name is not None else None)


class HandlerSet:
    """Proxies attached to host objects, released together."""

    def __init__(self, host: Host):
        self.host = host
        self._attached: list[tuple[Any, str, Any]] = []

    def attach(self, target: Any, attr: str, fn: Callable) -> None:
        proxy = self.host.proxy(fn)
        self._attached.append((target, attr, proxy))
        setattr(target, attr, proxy)

    def release(self) -> None:
        attached, self._attached = self._attached, []
        for target, attr, proxy in attached:
            try:
                setattr(target, attr, None)
            finally:
                proxy.destroy()


def abort_transaction(transaction: Any) -> None:
    """Abort transaction if it is still running. Finished transactions are left alone."""
    if transaction is None:
        return
    try:
        transaction.abort()
    except Exception as ex:
        ui_log.debug("transaction_abort_skipped", error=f"{type(ex).__name__}: {ex}")


async def settle(
    future: asyncio.Future, timeout: Optional[float], transaction: Any
) -> Any:
    if timeout is None:
        return await future
    try:
        return await asyncio.wait_for(future, timeout)
    except asyncio.TimeoutError:
        abort_transaction(transaction)
        raise TimeoutError(f"Operation did not complete within {timeout}s") from None


def _watch_transaction(
    handlers: HandlerSet, transaction: Any, future: asyncio.Future
) -> None:
    """Reject future when transaction errors or aborts."""

    def on_error(event):
        # error events bubble from the failed request, which is event.target
        if not future.done():
            future.set_exception(error_from(event.target.error, "Transaction error"))

    def on_abort(event):
        if not future.done():
            error = transaction.error
            if error is None or type(error).__name__ in ("JsNull", "JsUndefined"):
                future.set_exception(TransactionAbortedError())
            else:
                future.set_exception(error_from(error, "Transaction aborted"))

    handlers.attach(transaction, "onerror", on_error)
    handlers.attach(transaction, "onabort", on_abort)


async def await_request(
    host: Host,
    request: Any,
    *,
    transaction: Any = None,
    timeout: Optional[float] = None,
) -> Any:
    """
    Wait for a request's success event.

    Args:
        host: host binding the request belongs to
        request: IDBRequest-like object
        transaction: owning transaction; its error/abort also rejects the wait
        timeout: seconds to wait before aborting the transaction

    Returns:
        request result, with host null mapped to None

    Raises:
        HostRequestError: request error, transaction error or abort
        TimeoutError: timeout elapsed
    """
    loop = asyncio.get_event_loop()
    future = loop.create_future()
    handlers = HandlerSet(host)

    def on_success(event):
        if not future.done():
            future.set_result(request.result)

    def on_error(event):
        if not future.done():
            future.set_exception(error_from(request.error, "Request error"))

    try:
        handlers.attach(request, "onsuccess", on_success)
        handlers.attach(request, "onerror", on_error)
        if transaction is not None:
            _watch_transaction(handlers, transaction, future)
        result = await settle(future, timeout, transaction)
        return None if host.is_null(result) else result
    finally:
        handlers.release()


async def await_transaction(
    host: Host,
    transaction: Any,
    *,
    request: Any = None,
    timeout: Optional[float] = None,
) -> Any:
    """
    Wait for a transaction's complete event.

    When request is given, its error rejects the wait and its result is
    returned once the transaction has committed.

    Raises:
        HostRequestError: request error, transaction error or abort
        TimeoutError: timeout elapsed
    """
    loop = asyncio.get_event_loop()
    future = loop.create_future()
    handlers = HandlerSet(host)
    captured = {}

    def on_complete(event):
        if not future.done():
            future.set_result(captured.get("result"))

    def on_request_success(event):
        captured["result"] = request.result

    def on_request_error(event):
        if not future.done():
            future.set_exception(error_from(request.error, "Request error"))

    try:
        handlers.attach(transaction, "oncomplete", on_complete)
        _watch_transaction(handlers, transaction, future)
        if request is not None:
            handlers.attach(request, "onsuccess", on_request_success)
            handlers.attach(request, "onerror", on_request_error)
        result = await settle(future, timeout, transaction)
        return None if host.is_null(result) else result
    finally:
        handlers.release()


async def walk_cursor(
    host: Host,
    request: Any,
    on_item: Callable[[Any], bool],
    *,
    transaction: Any = None,
    timeout: Optional[float] = None,
) -> None:
    """
    Walk a cursor request to exhaustion or until on_item returns False.

    on_item(cursor) runs inside the success callback, while the transaction
    is active. An exception from on_item rejects the walk and aborts the
    transaction.
    """
    loop = asyncio.get_event_loop()
    future = loop.create_future()
    handlers = HandlerSet(host)

    def on_success(event):
        if future.done():
            return
        cursor = request.result
        if host.is_null(cursor):
            future.set_result(True)
            return
        try:
            should_continue = on_item(cursor)
            if should_continue:
                cursor.continue_()
        except Exception as e:
            future.set_exception(e)
            abort_transaction(transaction)
            return
        if not should_continue:
            future.set_result(True)

    def on_error(event):
        if not future.done():
            future.set_exception(error_from(request.error, "Cursor error"))

    try:
        handlers.attach(request, "onsuccess", on_success)
        handlers.attach(request, "onerror", on_error)
        if transaction is not None:
            _watch_transaction(handlers, transaction, future)
        await settle(future, timeout, transaction)
    finally:
        handlers.release()

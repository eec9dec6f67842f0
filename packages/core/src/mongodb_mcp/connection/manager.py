"""Connection lifecycle state machine.

All mutation funnels through ``_change_state``; every coroutine re-reads
``_state`` after each await instead of trusting a state it captured earlier.
A generation counter is bumped by every ``connect`` and every teardown, so a
connect attempt that resumes after being superseded closes the handle it
resolved and leaves the newer state alone.
"""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from collections.abc import Awaitable, Callable
from typing import Any

from mongodb_mcp.config import Settings
from mongodb_mcp.connection.info import (
    ConnectionSettings,
    ConnectionStringInfo,
    get_connection_string_info,
    parse_connection_string,
    set_app_name_if_missing,
)
from mongodb_mcp.connection.state import (
    ConnectionState,
    ConnectionStateConnected,
    ConnectionStateConnecting,
    ConnectionStateDisconnected,
    ConnectionStateErrored,
)
from mongodb_mcp.driver import (
    DEFAULT_DRIVER_OPTIONS,
    OIDC_AUTH_FAILED,
    OIDC_AUTH_SUCCEEDED,
    OIDC_NOTIFY_DEVICE_FLOW,
    DeviceFlowCallback,
    DeviceFlowInfo,
    PyMongoServiceProvider,
    ServiceProvider,
)
from mongodb_mcp.errors import ConfigurationError, NotConnectedError
from mongodb_mcp.events import EventEmitter
from mongodb_mcp.keychain import Keychain
from mongodb_mcp.logs import LogId, log_extra

logger = logging.getLogger(__name__)

CONNECTION_REQUEST = "connection-request"
CONNECTION_SUCCESS = "connection-success"
CONNECTION_TIME_OUT = "connection-time-out"
CONNECTION_CLOSE = "connection-close"
CONNECTION_ERROR = "connection-error"
CLOSE = "close"

ProviderFactory = Callable[[str, dict[str, Any]], Awaitable[ServiceProvider]]


class ConnectionManager:
    """Owns the single database connection of a session.

    Args:
        settings: Server settings (OIDC flow selection, connect timeout).
        provider_factory: Builds a handle from a connection string and driver
            options. Must raise synchronously for malformed input and return an
            awaitable resolving to the live handle.
        auth_events: Emitter the driver's OIDC subsystem reports to.
        keychain: Receives tokens obtained through OIDC logins.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        provider_factory: ProviderFactory | None = None,
        auth_events: EventEmitter | None = None,
        keychain: Keychain | None = None,
        device_id: str | None = None,
    ):
        self._settings = settings
        self._provider_factory = provider_factory or PyMongoServiceProvider.connect
        self._keychain = keychain
        self._device_id = device_id
        self._client_name = "unknown"
        self._state: ConnectionState = ConnectionStateDisconnected()
        self._generation = 0
        self._teardown: tuple[ConnectionState, asyncio.Task] | None = None
        self._background: set[asyncio.Future] = set()

        self.events = EventEmitter()
        self.auth_events = auth_events or EventEmitter()
        self.auth_events.on(OIDC_AUTH_FAILED, self.on_auth_failed)
        self.auth_events.on(OIDC_AUTH_SUCCEEDED, self.on_auth_succeeded)
        self.auth_events.on(OIDC_NOTIFY_DEVICE_FLOW, self.on_notify_device_flow)

    @property
    def current_connection_state(self) -> ConnectionState:
        return self._state

    @property
    def client_name(self) -> str:
        return self._client_name

    def set_client_name(self, client_name: str) -> None:
        self._client_name = client_name or "unknown"

    def _change_state(self, event: str, new_state: ConnectionState) -> ConnectionState:
        self._state = new_state
        self.events.emit(event, new_state)
        return new_state

    # =========================================================================
    # connect
    # =========================================================================

    async def connect(self, settings: ConnectionSettings) -> ConnectionState:
        """Connect to ``settings``, replacing any existing connection.

        Raises:
            ConfigurationError: The target could not be turned into a handle.
            NotConnectedError: The handle failed to resolve or timed out.
        """
        self.events.emit(CONNECTION_REQUEST, self._state)

        if isinstance(self._state, (ConnectionStateConnected, ConnectionStateConnecting)):
            await self.disconnect()

        self._generation += 1
        generation = self._generation
        info = ConnectionStringInfo()

        try:
            connection_string = set_app_name_if_missing(
                settings.connection_string, self._device_id, self._client_name
            )
            info = get_connection_string_info(connection_string, self._settings, settings.atlas)
            options = self._driver_options(connection_string, settings, info)
            pending = asyncio.ensure_future(self._provider_factory(connection_string, options))
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.error(
                f"Failed to create connection: {reason}",
                extra=log_extra(LogId.MONGODB_CONNECT_FAILURE, "ConnectionManager"),
            )
            self._change_state(
                CONNECTION_ERROR,
                ConnectionStateErrored(
                    error_reason=reason, connection_string_info=info, atlas=settings.atlas
                ),
            )
            raise ConfigurationError(reason) from e

        if info.is_oidc:
            pending.add_done_callback(self._on_oidc_pending_done)
            return self._change_state(
                CONNECTION_REQUEST,
                ConnectionStateConnecting(
                    pending=pending,
                    connection_string_info=info,
                    oidc_connection_type=info.auth_type,
                    atlas=settings.atlas,
                ),
            )

        timeout_s = self._settings.connect_timeout_ms / 1000
        try:
            provider = await asyncio.wait_for(asyncio.shield(pending), timeout=timeout_s)
        except TimeoutError as e:
            pending.add_done_callback(self._close_late_handle)
            reason = f"Timed out after {self._settings.connect_timeout_ms}ms waiting for the connection"
            self._fail_attempt(generation, CONNECTION_TIME_OUT, reason, info, settings)
            raise NotConnectedError(reason) from e
        except Exception as e:
            reason = str(e) or type(e).__name__
            self._fail_attempt(generation, CONNECTION_ERROR, reason, info, settings)
            raise NotConnectedError(reason) from e

        if generation != self._generation:
            logger.info("Connection attempt superseded before it completed; closing its handle")
            await self._close_quietly(provider)
            return self._state

        return self._change_state(
            CONNECTION_SUCCESS,
            ConnectionStateConnected(
                service_provider=provider, connection_string_info=info, atlas=settings.atlas
            ),
        )

    def _fail_attempt(
        self,
        generation: int,
        event: str,
        reason: str,
        info: ConnectionStringInfo,
        settings: ConnectionSettings,
    ) -> None:
        logger.error(
            f"Failed to connect: {reason}",
            extra=log_extra(LogId.MONGODB_CONNECT_FAILURE, "ConnectionManager"),
        )
        if generation != self._generation:
            return
        self._change_state(
            event,
            ConnectionStateErrored(
                error_reason=reason, connection_string_info=info, atlas=settings.atlas
            ),
        )

    def _driver_options(
        self,
        connection_string: str,
        settings: ConnectionSettings,
        info: ConnectionStringInfo,
    ) -> dict[str, Any]:
        if settings.driver_options is not None:
            options = dict(settings.driver_options)
        else:
            options = dict(DEFAULT_DRIVER_OPTIONS)

        if info.is_oidc:
            # A human login can take minutes; an operation timeout would abort it.
            options.pop("timeoutMS", None)
            mechanism_properties = parse_connection_string(connection_string).option(
                "authMechanismProperties"
            )
            if not (
                mechanism_properties
                and "ENVIRONMENT:" in urllib.parse.unquote_plus(mechanism_properties).upper()
            ):
                properties = dict(options.get("authMechanismProperties") or {})
                properties.setdefault(
                    "OIDC_HUMAN_CALLBACK",
                    DeviceFlowCallback(
                        self._threadsafe_notifier(self._generation),
                        open_browser=bool(self._settings.browser),
                        keychain=self._keychain,
                    ),
                )
                options["authMechanismProperties"] = properties
        return options

    def _threadsafe_notifier(self, generation: int) -> Callable[..., None]:
        loop = asyncio.get_running_loop()

        def _notify(event: str, *args: Any) -> None:
            loop.call_soon_threadsafe(self._dispatch_auth_event, generation, event, *args)

        return _notify

    def _dispatch_auth_event(self, generation: int, event: str, *args: Any) -> None:
        # Callbacks of an abandoned login keep running in the driver's thread.
        if generation != self._generation:
            logger.debug(
                f"Dropping {event} from a superseded connection attempt",
                extra=log_extra(LogId.OIDC_FLOW, "ConnectionManager"),
            )
            return
        self.auth_events.emit(event, *args)

    # =========================================================================
    # disconnect / close
    # =========================================================================

    async def disconnect(self) -> ConnectionState:
        """Close the current handle, if any. Never raises.

        Disconnected and errored states are returned unchanged; an errored
        state is kept so its reason stays available for diagnostics.
        """
        state = self._state
        if isinstance(state, (ConnectionStateDisconnected, ConnectionStateErrored)):
            return state

        if self._teardown is not None and _same_connection(self._teardown[0], state):
            task = self._teardown[1]
        else:
            self._generation += 1
            task = asyncio.ensure_future(self._tear_down(state))
            self._teardown = (state, task)

        await asyncio.shield(task)
        return self._state

    async def _tear_down(self, state: ConnectionState) -> None:
        try:
            if isinstance(state, ConnectionStateConnected):
                await state.service_provider.close()
            elif isinstance(state, ConnectionStateConnecting):
                await self._close_pending(state.pending)
        except Exception as e:
            logger.warning(
                f"Error closing connection: {e}",
                extra=log_extra(LogId.MONGODB_DISCONNECT_FAILURE, "ConnectionManager"),
            )
        finally:
            if self._teardown is not None and self._teardown[0] is state:
                self._teardown = None
            if _same_connection(self._state, state):
                self._change_state(CONNECTION_CLOSE, ConnectionStateDisconnected())

    async def _close_pending(self, pending: asyncio.Future[ServiceProvider]) -> None:
        # An OIDC login may never complete; cancelling lets the factory clean up.
        if not pending.done():
            pending.cancel()
        try:
            provider = await pending
        except asyncio.CancelledError:
            if not pending.cancelled():
                raise
            return
        except Exception as e:
            logger.debug(f"Pending connection failed while disconnecting: {e}")
            return
        await provider.close()

    async def close(self) -> None:
        """Disconnect and announce that this manager is done."""
        try:
            await self.disconnect()
        except Exception as e:
            logger.error(
                f"Error when closing ConnectionManager: {e}",
                extra=log_extra(LogId.MONGODB_DISCONNECT_FAILURE, "ConnectionManager"),
            )
        finally:
            self.events.emit(CLOSE, self._state)

    # =========================================================================
    # Out-of-band OIDC callbacks
    # =========================================================================

    def _is_pending_oidc(self, pending: asyncio.Future | None = None) -> bool:
        state = self._state
        if not isinstance(state, ConnectionStateConnecting):
            return False
        if not state.connection_string_info.is_oidc:
            return False
        return pending is None or state.pending is pending

    def on_auth_failed(self, error: BaseException | str) -> None:
        state = self._state
        if self._is_pending_oidc() and isinstance(state, ConnectionStateConnecting):
            self._spawn(self._disconnect_on_auth_error(state.pending, error))

    async def _disconnect_on_auth_error(
        self, pending: asyncio.Future, error: BaseException | str
    ) -> None:
        if not self._is_pending_oidc(pending):
            return
        state = self._state
        info = getattr(state, "connection_string_info", None)
        atlas = getattr(state, "atlas", None)
        try:
            await self.disconnect()
        except Exception as e:
            logger.warning(
                str(e), extra=log_extra(LogId.OIDC_FLOW, "disconnect_on_auth_error")
            )
        finally:
            if isinstance(self._state, ConnectionStateDisconnected):
                self._change_state(
                    CONNECTION_ERROR,
                    ConnectionStateErrored(
                        error_reason=str(error), connection_string_info=info, atlas=atlas
                    ),
                )

    async def on_auth_succeeded(self) -> None:
        state = self._state
        if self._is_pending_oidc() and isinstance(state, ConnectionStateConnecting):
            try:
                provider = await state.pending
            except Exception as e:
                logger.debug(f"OIDC login succeeded but the connection failed: {e}")
                return
            self._promote(state.pending, provider)
        logger.info(
            "Authenticated successfully.",
            extra=log_extra(LogId.OIDC_FLOW, "oidc-auth-succeeded"),
        )

    def on_notify_device_flow(self, flow: DeviceFlowInfo) -> None:
        state = self._state
        if self._is_pending_oidc() and isinstance(state, ConnectionStateConnecting):
            self._change_state(
                CONNECTION_REQUEST,
                state.with_device_flow(flow.verification_url, flow.user_code),
            )
        logger.info(
            "OIDC flow changed to device flow.",
            extra=log_extra(LogId.OIDC_FLOW, "oidc-notify-device-flow"),
        )

    def _on_oidc_pending_done(self, pending: asyncio.Future) -> None:
        # Covers OIDC flows that never report through auth_events (machine flows)
        # and failures that happen outside the login itself.
        if pending.cancelled() or not self._is_pending_oidc(pending):
            return
        error = pending.exception()
        if error is None:
            self._promote(pending, pending.result())
            return
        state = self._state
        self._change_state(
            CONNECTION_ERROR,
            ConnectionStateErrored(
                error_reason=str(error) or type(error).__name__,
                connection_string_info=getattr(state, "connection_string_info", None),
                atlas=getattr(state, "atlas", None),
            ),
        )

    def _promote(self, pending: asyncio.Future, provider: ServiceProvider) -> None:
        state = self._state
        if not self._is_pending_oidc(pending) or not isinstance(state, ConnectionStateConnecting):
            return
        self._change_state(
            CONNECTION_SUCCESS,
            ConnectionStateConnected(
                service_provider=provider,
                connection_string_info=state.connection_string_info,
                atlas=state.atlas,
            ),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _close_late_handle(self, pending: asyncio.Future) -> None:
        if pending.cancelled() or pending.exception() is not None:
            return
        self._spawn(self._close_quietly(pending.result()))

    async def _close_quietly(self, provider: ServiceProvider) -> None:
        try:
            await provider.close()
        except Exception as e:
            logger.warning(
                f"Error closing superseded connection: {e}",
                extra=log_extra(LogId.MONGODB_DISCONNECT_FAILURE, "ConnectionManager"),
            )


def _same_connection(a: ConnectionState, b: ConnectionState) -> bool:
    if a is b:
        return True
    # A device flow notification swaps the connecting state but not its handle.
    return (
        isinstance(a, ConnectionStateConnecting)
        and isinstance(b, ConnectionStateConnecting)
        and a.pending is b.pending
    )

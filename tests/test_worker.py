"""Tests for the service runtime and the expiry sweeper.

Tests cover:
- One-shot sweep (warnings, expired sessions, expired credentials)
- Sweeper loop shutdown and error resilience
- Runtime wiring from settings
- Runtime start/stop
- Log level taken from settings at process start
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import SecretStr

from ssokeeper.core.config import (
    CredentialStoreProvider,
    CredentialStoreSettings,
    OIDCSettings,
    SessionSettings,
    Settings,
)
from ssokeeper.models.credential import Credential
from ssokeeper.services.credential_store import (
    EncryptedFileCredentialStore,
    InMemoryCredentialStore,
)
from ssokeeper.services.events import SessionExpiring
from ssokeeper.services.token_refresh import OIDCRefreshExecutor
from ssokeeper.worker.main import SessionRuntime, build_runtime, configure_logging, run
from ssokeeper.worker.sweeper import run_sweeper_loop, sweep_once


class TestSweepOnce:
    """Tests for a single maintenance pass."""

    @pytest.mark.asyncio
    async def test_sweep_once(self, manager, make_auth_result, clock, credential_store, recorded_events):
        expired = await manager.create_session(make_auth_result("alice"))
        clock.advance(seconds=30)
        expiring = await manager.create_session(make_auth_result("bob"))
        await credential_store.store(
            "orphan", Credential(user_id="carol", created_at=clock(), expires_at=clock())
        )
        clock.advance(seconds=80)

        removed = await sweep_once(manager, credential_store)

        assert removed == 1
        assert manager.get_session(expired.session_id) is None
        assert manager.get_session(expiring.session_id) is expiring
        assert not await credential_store.exists("orphan")
        warnings = [e for e in recorded_events if isinstance(e, SessionExpiring)]
        assert [e.session_id for e in warnings] == [expiring.session_id]

    @pytest.mark.asyncio
    async def test_sweep_once_without_credential_store(self, manager, make_auth_result, clock):
        await manager.create_session(make_auth_result())
        clock.advance(seconds=200)

        assert await sweep_once(manager) == 1


class TestSweeperLoop:
    """Tests for the sweeper background loop."""

    @pytest.mark.asyncio
    async def test_loop_stops_on_shutdown(self, manager, make_auth_result, clock):
        await manager.create_session(make_auth_result())
        clock.advance(seconds=200)
        shutdown = asyncio.Event()

        task = asyncio.create_task(
            run_sweeper_loop(manager, check_interval=0.01, shutdown_event=shutdown)
        )
        for _ in range(100):
            if manager.store.count() == 0:
                break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert manager.store.count() == 0

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self):
        manager = MagicMock()
        manager.sweep_expired_sessions = AsyncMock(side_effect=[RuntimeError("boom"), 0, 0, 0])
        shutdown = asyncio.Event()

        task = asyncio.create_task(
            run_sweeper_loop(manager, check_interval=0.01, shutdown_event=shutdown)
        )
        for _ in range(100):
            if manager.sweep_expired_sessions.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert manager.sweep_expired_sessions.await_count >= 2


class TestBuildRuntime:
    """Tests for runtime wiring."""

    def test_default_wiring(self):
        runtime = build_runtime(Settings())

        assert isinstance(runtime, SessionRuntime)
        assert isinstance(runtime.credential_store, InMemoryCredentialStore)
        assert runtime.manager.scheduler is runtime.scheduler
        assert runtime.manager.events is runtime.event_bus
        assert runtime.manager.metrics is runtime.metrics
        assert runtime.manager._refresh_executor is None

    def test_encrypted_store_and_oidc(self, tmp_path):
        settings = Settings(
            credential_store=CredentialStoreSettings(
                provider=CredentialStoreProvider.ENCRYPTED_FILE,
                file_path=str(tmp_path / "creds.enc"),
                passphrase=SecretStr("pass"),
            ),
            oidc=OIDCSettings(
                enabled=True,
                client_id="client",
                token_endpoint="https://idp.example.org/token",
            ),
        )

        runtime = build_runtime(settings)

        assert isinstance(runtime.credential_store, EncryptedFileCredentialStore)
        assert isinstance(runtime.manager._refresh_executor, OIDCRefreshExecutor)


class TestSessionRuntime:
    """Tests for runtime start/stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_auth_result):
        settings = Settings(
            session=SessionSettings(cleanup_interval=timedelta(seconds=60)),
        )
        runtime = build_runtime(settings)
        runtime.shutdown_timeout = 1.0

        await runtime.start()
        assert runtime.scheduler.is_running
        session = await runtime.manager.create_session(make_auth_result())
        assert runtime.scheduler.is_registered(session.session_id)

        await runtime.stop()

        assert not runtime.scheduler.is_running
        assert runtime.manager.store.count() == 0

    @pytest.mark.asyncio
    async def test_scheduler_not_started_without_auto_refresh(self):
        settings = Settings(session=SessionSettings(enable_auto_refresh=False))
        runtime = build_runtime(settings)
        runtime.shutdown_timeout = 1.0

        await runtime.start()
        assert not runtime.scheduler.is_running
        await runtime.stop()


class TestRunLogging:
    """Tests for log level configuration at process start."""

    @pytest.fixture
    def restore_root_level(self):
        root = logging.getLogger()
        level = root.level
        yield root
        root.setLevel(level)

    def test_configure_logging_uses_setting(self, restore_root_level):
        configure_logging(Settings(log_level="debug"))
        assert restore_root_level.level == logging.DEBUG

    def test_run_takes_level_from_settings(self, restore_root_level):
        with (
            patch("ssokeeper.core.settings.get_settings", return_value=Settings(log_level="WARNING")),
            patch("ssokeeper.worker.main.signal.signal"),
            patch("ssokeeper.worker.main.asyncio.run", side_effect=lambda coro: coro.close()),
            pytest.raises(SystemExit) as exc_info,
        ):
            run()

        assert exc_info.value.code == 0
        assert restore_root_level.level == logging.WARNING

"""Tests for graceful shutdown behavior."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import familywall.main as main


class TestGracefulShutdown:
    """Tests for server shutdown sequencing."""

    @pytest.fixture(autouse=True)
    def reset_state(self):
        main._shutdown_in_progress = False
        main._orchestrator = None
        yield
        main._shutdown_in_progress = False
        main._orchestrator = None

    @pytest.mark.asyncio
    async def test_stops_sync_then_closes_db(self) -> None:
        calls = []
        orch = MagicMock()
        orch.shutdown = AsyncMock(side_effect=lambda: calls.append("sync"))
        main._orchestrator = orch

        with patch("familywall.main.close_db", AsyncMock(side_effect=lambda: calls.append("db"))):
            await main._graceful_shutdown()

        assert calls == ["sync", "db"]

    @pytest.mark.asyncio
    async def test_runs_once(self) -> None:
        orch = MagicMock()
        orch.shutdown = AsyncMock()
        main._orchestrator = orch

        with patch("familywall.main.close_db", AsyncMock()) as close:
            await main._graceful_shutdown()
            await main._graceful_shutdown()

        orch.shutdown.assert_awaited_once()
        close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_orchestrator_error_does_not_block_db_close(self) -> None:
        orch = MagicMock()
        orch.shutdown = AsyncMock(side_effect=RuntimeError("sync task wedged"))
        main._orchestrator = orch

        with patch("familywall.main.close_db", AsyncMock()) as close:
            await main._graceful_shutdown()

        close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_without_orchestrator(self) -> None:
        with patch("familywall.main.close_db", AsyncMock()) as close:
            await main._graceful_shutdown()
        close.assert_awaited_once()

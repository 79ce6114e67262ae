"""Tests for the Telegram bot module."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from streamkeeper.server.telegram_bot import StreamKeeperBot, _format_delay, format_status


class TestFormatting:
    def test_format_delay(self):
        assert _format_delay(2000) == "2.0s"
        assert _format_delay(4500) == "4.5s"
        assert _format_delay(0) == "0s"

    def test_format_status_playing(self):
        text = format_status({
            "attempt_count": 0, "max_attempts": 10, "current_delay_ms": 3000,
            "retry_pending": False, "exhausted": False,
            "session": {"generation": 4, "state": "playing"},
        })
        assert "Session: PLAYING (#4)" in text
        assert "Attempts: 0/10" in text
        assert "Next delay: 3.0s" in text
        assert "Retry pending" not in text

    def test_format_status_exhausted(self):
        text = format_status({
            "attempt_count": 10, "max_attempts": 10, "current_delay_ms": 30000,
            "retry_pending": False, "exhausted": True,
            "session": {"generation": 11, "state": "errored"},
        })
        assert "Gave up" in text
        assert "/reconnect" in text

    def test_format_status_no_session(self):
        text = format_status({"session": None, "retry_pending": True})
        assert "Session: NONE" in text
        assert "Retry pending" in text


class TestBotInit:
    def test_default_config(self):
        bot = StreamKeeperBot("fake-token")
        assert bot.token == "fake-token"
        assert bot.api_url == "http://localhost:5050"
        assert bot.allowed_users == set()

    def test_custom_config(self):
        bot = StreamKeeperBot("tok", api_url="http://pi:8080/", allowed_users=[123, 456])
        assert bot.api_url == "http://pi:8080"
        assert bot.allowed_users == {123, 456}

    def test_auth_no_restrictions(self):
        assert StreamKeeperBot("tok")._is_authorized(999) is True

    def test_auth_denied(self):
        assert StreamKeeperBot("tok", allowed_users=[100])._is_authorized(999) is False

    def test_keyboard_has_reconnect(self):
        kb = StreamKeeperBot("tok")._keyboard()
        buttons = [btn.callback_data for row in kb.inline_keyboard for btn in row]
        assert "reconnect" in buttons


def _make_update(user_id=123):
    """Create a mock Telegram Update."""
    update = MagicMock(spec=["effective_user", "message", "callback_query"])
    update.effective_user = MagicMock()
    update.effective_user.id = user_id
    update.message = AsyncMock()
    update.message.reply_text = AsyncMock()
    return update


def _make_context(args=None):
    ctx = MagicMock()
    ctx.args = args or []
    return ctx


class TestCommandHandlers:
    @pytest.fixture
    def bot(self):
        return StreamKeeperBot("tok", allowed_users=[123])

    @pytest.mark.asyncio
    async def test_start_lists_commands(self, bot):
        update = _make_update()
        await bot.cmd_start(update, _make_context())
        text = update.message.reply_text.call_args[0][0]
        assert "/reconnect" in text
        assert "/status" in text

    @pytest.mark.asyncio
    async def test_unauthorized(self, bot):
        update = _make_update(user_id=999)
        await bot.cmd_reconnect(update, _make_context())
        update.message.reply_text.assert_called_once_with("Not authorized.")

    @pytest.mark.asyncio
    async def test_reconnect_posts_to_api(self, bot):
        update = _make_update()
        with patch.object(bot, "_api_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = {"ok": True, "message": "Reconnecting"}
            await bot.cmd_reconnect(update, _make_context())
            mock_post.assert_called_once_with("/api/reconnect")
        assert update.message.reply_text.call_args[0][0] == "Reconnecting"

    @pytest.mark.asyncio
    async def test_reconnect_api_down(self, bot):
        update = _make_update()
        with patch.object(bot, "_api_post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = ConnectionError("refused")
            await bot.cmd_reconnect(update, _make_context())
        assert "Error" in update.message.reply_text.call_args[0][0]

    @pytest.mark.asyncio
    async def test_reconnect_refused_by_server(self, bot):
        update = _make_update()
        with patch.object(bot, "_api_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = {"error": "playback loop is not running"}
            await bot.cmd_reconnect(update, _make_context())
        assert update.message.reply_text.call_args[0][0] == "Error: playback loop is not running"

    @pytest.mark.asyncio
    async def test_status(self, bot):
        update = _make_update()
        with patch.object(bot, "_api_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = {
                "attempt_count": 2, "max_attempts": 10, "current_delay_ms": 6750,
                "retry_pending": True, "exhausted": False,
                "session": {"generation": 3, "state": "errored"},
            }
            await bot.cmd_status(update, _make_context())
        text = update.message.reply_text.call_args[0][0]
        assert "Attempts: 2/10" in text
        assert "Retry pending" in text

    @pytest.mark.asyncio
    async def test_status_server_unreachable(self, bot):
        update = _make_update()
        with patch.object(bot, "_api_get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = ConnectionError("refused")
            await bot.cmd_status(update, _make_context())
        assert "Could not reach" in update.message.reply_text.call_args[0][0]

    @pytest.mark.asyncio
    async def test_reconnect_button(self, bot):
        update = MagicMock()
        update.callback_query.from_user.id = 123
        update.callback_query.data = "reconnect"
        update.callback_query.answer = AsyncMock()
        update.callback_query.edit_message_text = AsyncMock()
        with patch.object(bot, "_api_post", new_callable=AsyncMock) as mock_post, \
                patch.object(bot, "_api_get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = {"session": None}
            await bot.handle_callback(update, _make_context())
            mock_post.assert_called_once_with("/api/reconnect")
        update.callback_query.edit_message_text.assert_called_once()

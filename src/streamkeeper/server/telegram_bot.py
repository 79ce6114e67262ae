"""Telegram bot for operator control of streamkeeper.

Chat commands map onto the HTTP control API, so the bot can run alongside
the server or on a separate machine. ``/reconnect`` is the operator's
"reconnect now" trigger.

Requires: pip install "streamkeeper[telegram]"
"""

import asyncio
import logging
import threading
from typing import Optional

import httpx
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

logger = logging.getLogger(__name__)


def _format_delay(ms: float) -> str:
    """Format a millisecond delay as seconds with one decimal."""
    if ms <= 0:
        return "0s"
    return f"{ms / 1000:.1f}s"


def format_status(status: dict) -> str:
    """Render an /api/status payload as chat text."""
    session = status.get("session") or {}
    state = session.get("state", "none").upper()
    lines = [
        f"Session: {state}" + (f" (#{session['generation']})" if session else ""),
        f"Attempts: {status.get('attempt_count', 0)}/{status.get('max_attempts', 0)}",
        f"Next delay: {_format_delay(status.get('current_delay_ms', 0))}",
    ]
    if status.get("retry_pending"):
        lines.append("Retry pending")
    if status.get("exhausted"):
        lines.append("Gave up - use /reconnect")
    return "\n".join(lines)


class StreamKeeperBot:
    """Telegram bot for streamkeeper.

    Args:
        token: Telegram bot token from @BotFather
        api_url: streamkeeper server API URL (e.g. http://localhost:5050)
        allowed_users: List of Telegram user IDs allowed to use the bot.
                      Empty list = allow everyone (not recommended for public bots).
    """

    def __init__(
        self,
        token: str,
        api_url: str = "http://localhost:5050",
        allowed_users: Optional[list[int]] = None,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.allowed_users = set(allowed_users or [])
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        if not self.allowed_users:
            return True
        return user_id in self.allowed_users

    async def _api_get(self, path: str) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{self.api_url}{path}", timeout=10)
            return resp.json()

    async def _api_post(self, path: str, data: dict | None = None) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.post(f"{self.api_url}{path}", json=data or {}, timeout=30)
            return resp.json()

    def _keyboard(self) -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup([[
            InlineKeyboardButton("Reconnect", callback_data="reconnect"),
            InlineKeyboardButton("Refresh", callback_data="refresh_status"),
        ]])

    async def _status_text(self) -> str:
        try:
            status = await self._api_get("/api/status")
        except (httpx.HTTPError, Exception) as e:
            return f"Could not reach streamkeeper server:\n{e}"
        return format_status(status)

    # --- Command Handlers ---

    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start and /help."""
        if not self._is_authorized(update.effective_user.id):
            await update.message.reply_text("Not authorized.")
            return

        await update.message.reply_text(
            "streamkeeper\n\n"
            "Commands:\n"
            "/status - Session and reconnect state\n"
            "/reconnect - Reset backoff and reconnect now"
        )

    async def cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update.effective_user.id):
            await update.message.reply_text("Not authorized.")
            return

        text = await self._status_text()
        await update.message.reply_text(text, reply_markup=self._keyboard())

    async def cmd_reconnect(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update.effective_user.id):
            await update.message.reply_text("Not authorized.")
            return

        try:
            result = await self._api_post("/api/reconnect")
            if "error" in result:
                await update.message.reply_text(f"Error: {result['error']}")
            else:
                await update.message.reply_text(result.get("message", "Reconnecting"))
        except (httpx.HTTPError, Exception) as e:
            await update.message.reply_text(f"Error: {e}")

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Inline keyboard buttons."""
        query = update.callback_query
        if not self._is_authorized(query.from_user.id):
            await query.answer("Not authorized.")
            return

        await query.answer()
        try:
            if query.data == "reconnect":
                await self._api_post("/api/reconnect")
            text = await self._status_text()
            await query.edit_message_text(text, reply_markup=self._keyboard())
        except (httpx.HTTPError, Exception) as e:
            await query.edit_message_text(f"Error: {e}")

    def build_application(self) -> Application:
        """Build the Telegram application with all handlers."""
        self._app = Application.builder().token(self.token).build()

        self._app.add_handler(CommandHandler("start", self.cmd_start))
        self._app.add_handler(CommandHandler("help", self.cmd_start))
        self._app.add_handler(CommandHandler("status", self.cmd_status))
        self._app.add_handler(CommandHandler("reconnect", self.cmd_reconnect))
        self._app.add_handler(CallbackQueryHandler(self.handle_callback))

        return self._app

    def start_background(self):
        """Start the bot in a background thread."""
        self._thread = threading.Thread(
            target=self._run_in_thread,
            daemon=True,
            name="telegram-bot",
        )
        self._thread.start()
        logger.info("Telegram bot started in background thread")

    def _run_in_thread(self):
        """Run the bot in a new event loop (for background thread)."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop

        app = self.build_application()
        loop.run_until_complete(app.initialize())
        loop.run_until_complete(app.start())
        loop.run_until_complete(app.updater.start_polling(drop_pending_updates=True))

        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(app.updater.stop())
            loop.run_until_complete(app.stop())
            loop.run_until_complete(app.shutdown())
            loop.close()

    def stop_background(self):
        """Stop the background bot thread."""
        if self._thread and self._thread.is_alive():
            if self._loop and self._loop.is_running():
                self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=10)
            self._thread = None
            logger.info("Telegram bot stopped")

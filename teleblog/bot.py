import asyncio
import logging
from typing import List, Optional

import uvicorn
from telegram import BotCommand, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from .config import Settings, configure_logging, load_settings
from .conversation import StateStore
from .dispatcher import BOT_COMMANDS, CB_DELETEBLOG_PREFIX, Button, Dispatcher, Event, Reply
from .images import ImageStore
from .repository import Repository
from .storage import open_backend
from .web import create_app

logger = logging.getLogger(__name__)

DISPATCHER_KEY = "dispatcher"


# ---------- Update -> Event ----------

def get_user_id(update: Update) -> Optional[int]:
    """Return the effective user id from update if available."""
    if update.effective_user:
        return update.effective_user.id
    return None


def event_from_message(update: Update) -> Optional[Event]:
    """Classify an incoming message as a command, plain text or a photo."""
    user_id = get_user_id(update)
    message = update.effective_message
    if user_id is None or message is None:
        return None
    if message.photo:
        # Telegram lists sizes smallest first
        return Event.for_photo(user_id, message.photo[-1].file_id, message.caption or "")
    text = message.text or ""
    if not text:
        return None
    if text.startswith("/"):
        parts = text.split()
        command = parts[0][1:].split("@", 1)[0]
        return Event.for_command(user_id, command, *parts[1:])
    return Event.for_text(user_id, text)


# ---------- Reply -> Telegram ----------

def build_keyboard(buttons: List[List[Button]]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(label, callback_data=data) for label, data in row] for row in buttons]
    )


async def send_reply(update: Update, reply: Reply) -> None:
    """Send a message, or answer and edit the callback message, as the reply asks."""
    markup = build_keyboard(reply.buttons)
    query = update.callback_query
    if query is not None:
        try:
            await query.answer(reply.answer or None)
        except TelegramError as e:
            logger.warning("Failed to answer callback: %s", e)
        if not reply.text:
            return
        if reply.edit:
            await query.edit_message_text(reply.text, reply_markup=markup, disable_web_page_preview=True)
            return
        if query.message is not None:
            await query.message.reply_text(reply.text, reply_markup=markup, disable_web_page_preview=True)
        return
    if reply.text and update.effective_message is not None:
        await update.effective_message.reply_text(reply.text, reply_markup=markup, disable_web_page_preview=True)


def get_dispatcher(context: ContextTypes.DEFAULT_TYPE) -> Dispatcher:
    return context.application.bot_data[DISPATCHER_KEY]


# ---------- Handlers ----------

async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    event = event_from_message(update)
    if event is None:
        return
    reply = await get_dispatcher(context).handle(event)
    await send_reply(update, reply)


async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    user_id = get_user_id(update)
    if query is None or user_id is None:
        return
    reply = await get_dispatcher(context).handle(Event.for_callback(user_id, query.data or ""))
    await send_reply(update, reply)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    uid = None
    if isinstance(update, Update) and update.effective_user:
        uid = update.effective_user.id
    logger.error("Error for user %s: %s", uid, context.error, exc_info=context.error)


def build_application(token: str, dispatcher: Dispatcher) -> Application:
    application = Application.builder().token(token).build()
    application.bot_data[DISPATCHER_KEY] = dispatcher

    new_messages = filters.UpdateType.MESSAGE
    application.add_handler(CommandHandler([name for name, _ in BOT_COMMANDS], on_message, filters=new_messages))
    # Plain text, photos and any command not registered above
    application.add_handler(MessageHandler((filters.TEXT | filters.PHOTO) & new_messages, on_message))
    application.add_handler(CallbackQueryHandler(on_callback, pattern=f"^{CB_DELETEBLOG_PREFIX}"))

    application.add_error_handler(error_handler)
    return application


# ---------- Main Function ----------

async def run(settings: Settings) -> None:
    """Run the Telegram poller and the web API in one event loop."""
    backend = await open_backend(settings)
    repository = Repository(backend, url_template=settings.blog_url_template)
    application = build_application(settings.bot_token, Dispatcher(repository, StateStore()))
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(repository, ImageStore(settings.bot_token)),
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    )
    try:
        async with application:
            await application.bot.set_my_commands([BotCommand(name, desc) for name, desc in BOT_COMMANDS])
            await application.start()
            await application.updater.start_polling()
            logger.warning("Bot started; web API on %s:%s", settings.host, settings.port)
            # Returns on SIGINT/SIGTERM
            await server.serve()
            await application.updater.stop()
            await application.stop()
    finally:
        await backend.close()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.bot_token:
        raise RuntimeError("BOT_TOKEN environment variable is required.")
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()

import os
import logging
from datetime import datetime, timezone

from telegram import Update
from telegram.ext import (
    ApplicationBuilder,
    CommandHandler,
    MessageHandler,
    filters,
    CallbackContext,
)

from coach.bot_messages import START_TOKEN, NEXT_TOKEN, ERROR_TOKEN, ADD_USER_TOKEN, UNAUTHORIZED_TOKEN, get_bot_message
from coach.database.database import add_user, get_user
from coach.errors import AuthenticationMissing, ChatError, ErrorCode
from coach.handler import ChatRequest, handle_chat
from coach.llm import CompletionClient, split_text
from coach.session import close_session, create_session

# Set up logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)

# Load environment variables
TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
ADMIN_TELEGRAM_ID = int(os.getenv("ADMIN_TELEGRAM_ID", "0"))

MAX_TELEGRAM_MESSAGE_LENGTH = 4096
SESSION_KEY = "session_id"

completion_client = CompletionClient()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def authenticated_id(update: Update):
    """Telegram id as a string for registered users and the admin, None otherwise."""
    user_id = update.effective_user.id
    if user_id == ADMIN_TELEGRAM_ID or get_user(str(user_id)):
        return str(user_id)
    return None


# Command handlers
async def start(update: Update, context: CallbackContext):
    user_id = authenticated_id(update)
    if user_id is None:
        await update.message.reply_text(get_bot_message(update.effective_user.id, UNAUTHORIZED_TOKEN))
        return
    # Start a new session
    context.user_data[SESSION_KEY] = create_session(user_id, utcnow())
    await update.message.reply_text(get_bot_message(user_id, START_TOKEN))


async def add_user_command(update: Update, context: CallbackContext):
    """
    Handle /add_user command to register a user profile.

    Only the admin (ADMIN_TELEGRAM_ID) may run it. Takes a single argument,
    the Telegram user ID to authorize.

    Example:
        /add_user 123456789
    """
    user_id = update.effective_user.id
    if user_id == ADMIN_TELEGRAM_ID:
        try:
            new_user_id = int(context.args[0])
            add_user(str(new_user_id), utcnow())
            await update.message.reply_text(get_bot_message(user_id, ADD_USER_TOKEN))
        except (IndexError, ValueError):
            await update.message.reply_text("Uso: /add_user <user_id>")
    else:
        await update.message.reply_text("No tienes permiso para añadir usuarios.")


async def reset_context(update: Update, context: CallbackContext):
    """
    Handle /next command: close the current conversation and start a new one.

    The old session stays in storage, it just stops being the active one.
    """
    user_id = authenticated_id(update)
    if user_id is None:
        await update.message.reply_text(get_bot_message(update.effective_user.id, UNAUTHORIZED_TOKEN))
        return
    now = utcnow()
    session_id = context.user_data.get(SESSION_KEY)
    if session_id:
        close_session(session_id, now)
    context.user_data[SESSION_KEY] = create_session(user_id, now)
    await update.message.reply_text(get_bot_message(user_id, NEXT_TOKEN))


# Message handler
async def handle_message(update: Update, context: CallbackContext):
    """
    Route a text message through the chat pipeline and send back the reply.

    Rejections (rate limit, invalid input, missing authorization) are sent as
    their human-readable message. Long replies are split to fit Telegram's
    message length limit.
    """
    request = ChatRequest(
        message=update.message.text,
        session_id=context.user_data.get(SESSION_KEY),
        message_id=f"tg-{update.effective_chat.id}-{update.message.message_id}",
    )
    try:
        response = await handle_chat(request, authenticated_id(update), utcnow(),
                                     completion_client=completion_client)
    except AuthenticationMissing:
        await update.message.reply_text(get_bot_message(update.effective_user.id, UNAUTHORIZED_TOKEN))
        return
    except ChatError as e:
        logging.warning(f"Chat request rejected: {e.code.value} {e.message}")
        if e.code is ErrorCode.INTERNAL:
            await update.message.reply_text(get_bot_message(update.effective_user.id, ERROR_TOKEN))
        else:
            await update.message.reply_text(e.message)
        return

    context.user_data[SESSION_KEY] = response.session_id
    for msg in split_text(response.reply, MAX_TELEGRAM_MESSAGE_LENGTH):
        await update.message.reply_text(msg)


def main():
    application = ApplicationBuilder().token(TELEGRAM_TOKEN).build()

    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("next", reset_context))
    application.add_handler(CommandHandler("add_user", add_user_command))

    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))

    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()

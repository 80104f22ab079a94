# tg_bot.py
import asyncio
import logging
import os

from dotenv import load_dotenv
from telegram import Update, ReplyKeyboardMarkup, KeyboardButton, InlineKeyboardMarkup, InlineKeyboardButton
from telegram.ext import (
    ApplicationBuilder, ConversationHandler, MessageHandler, CallbackQueryHandler, filters, ContextTypes
)

from errors import ReceiptPipelineError, ImageDecodeError
from imaging import compress_image
from ocr import OCR_TIMEOUT_SECONDS, process_receipt_images
from receipt_parser import parse
from split_calc import compute_splits, has_detected_data
from utils import find_currency

load_dotenv()
TOKEN = os.getenv("TELEGRAM_TOKEN")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Conversation States ---
WAIT_RECEIPT, ASK_SPLIT_MODE, ASK_NAMES, CONFIRM_PEOPLE, ITEM_SELECTION = range(5)

START_LABEL = "🚀 Start Receipt Splitter"
RESTART_LABEL = "🔄 Restart"
SCAN_LABEL = "📷 Scan"
NO_DATA_MESSAGE = "No data detected in receipt. Please try another photo."


# --- Keyboards ---
def main_menu_keyboard():
    return ReplyKeyboardMarkup(
        [[KeyboardButton(START_LABEL), KeyboardButton(RESTART_LABEL)]],
        resize_keyboard=True,
        one_time_keyboard=True
    )


def scan_keyboard():
    return ReplyKeyboardMarkup(
        [[KeyboardButton(SCAN_LABEL), KeyboardButton(RESTART_LABEL)]],
        resize_keyboard=True
    )


def split_mode_keyboard():
    return ReplyKeyboardMarkup(
        [[KeyboardButton("Even Split"), KeyboardButton("Each Pays Their Own"), KeyboardButton(RESTART_LABEL)]],
        resize_keyboard=True,
        one_time_keyboard=True
    )


# --- Formatting ---
def format_receipt(parsed, currency="$"):
    lines = [f"{it.quantity} x {it.description}: {currency}{it.price:.2f}" for it in parsed.items]
    lines.append(f"Tax: {currency}{parsed.tax:.2f}")
    lines.append(f"Tip: {currency}{parsed.tip:.2f}")
    lines.append(f"Total: {currency}{parsed.total:.2f}")
    return "\n".join(lines)


def format_split(splits, currency="$"):
    rows = []
    for name, share in splits.items():
        amount = share["grand_total"] if isinstance(share, dict) else share
        rows.append(f"{name}: {currency}{amount:.2f}")
    return "\n".join(rows)


# --- Handlers ---
async def handle_receipt_start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    context.user_data["photos"] = []
    await update.message.reply_text(
        "👋 Welcome to the Receipt Splitter bot!\n📸 Send one or more photos of the receipt, then press Scan.",
        reply_markup=main_menu_keyboard()
    )
    return WAIT_RECEIPT


async def handle_restart(update: Update, context: ContextTypes.DEFAULT_TYPE):
    context.user_data.clear()
    context.chat_data.clear()
    return await handle_receipt_start(update, context)


async def handle_receipt(update: Update, context: ContextTypes.DEFAULT_TYPE):
    photo = await update.message.photo[-1].get_file()
    data = bytes(await photo.download_as_bytearray())

    photos = context.user_data.setdefault("photos", [])
    photos.append(data)
    await update.message.reply_text(
        f"Got photo {len(photos)}. Send another section of the receipt, or press Scan.",
        reply_markup=scan_keyboard()
    )
    return WAIT_RECEIPT


async def handle_scan(update: Update, context: ContextTypes.DEFAULT_TYPE):
    photos = context.user_data.get("photos", [])
    if not photos:
        await update.message.reply_text("Please send a photo of the receipt first.")
        return WAIT_RECEIPT

    await update.message.reply_text("Scanning your receipt...")
    images = []
    for data in photos:
        try:
            images.append(await asyncio.to_thread(compress_image, data))
        except ImageDecodeError as exc:
            logger.warning("Skipping unreadable photo: %s", exc)

    try:
        ocr = await process_receipt_images(images, timeout=OCR_TIMEOUT_SECONDS)
    except ReceiptPipelineError as exc:
        logger.error("Receipt scan failed: %s", exc)
        context.user_data["photos"] = []
        await update.message.reply_text("Sorry, I couldn't read that receipt. Please send the photos again.")
        return WAIT_RECEIPT

    parsed = parse(ocr.text)
    context.user_data["photos"] = []
    if not has_detected_data(parsed):
        await update.message.reply_text(NO_DATA_MESSAGE)
        return WAIT_RECEIPT

    currency = find_currency(ocr.text) or "$"
    context.chat_data["parsed"] = parsed
    context.chat_data["currency"] = currency
    await update.message.reply_text(
        f"Here's what I found:\n{format_receipt(parsed, currency)}\n\nHow would you like to split the bill?",
        reply_markup=split_mode_keyboard()
    )
    return ASK_SPLIT_MODE


async def ask_names(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = update.message.text.strip().lower()
    if text == RESTART_LABEL.lower():
        return await handle_restart(update, context)

    context.user_data["split_mode"] = "even" if "even" in text else "item"
    await update.message.reply_text(
        "Please list the names of everyone present, separated by *spaces*.\n(Example: Alice Bob Charlie)\n⚠️ Don’t use the same name twice.",
        parse_mode="Markdown"
    )
    return ASK_NAMES


async def confirm_people(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if update.message.text.strip() == RESTART_LABEL:
        return await handle_restart(update, context)

    names = list(dict.fromkeys(n.strip() for n in update.message.text.split() if n.strip()))
    context.user_data["participants"] = names

    keyboard = InlineKeyboardMarkup([[
        InlineKeyboardButton("✅ Yes", callback_data="yes"),
        InlineKeyboardButton("❌ No", callback_data="no")
    ]])
    await update.message.reply_text(
        f"So there are *{len(names)}* people present: {', '.join(names)}. Is that correct?",
        parse_mode="Markdown",
        reply_markup=keyboard
    )
    return CONFIRM_PEOPLE


async def confirm_people_response(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()

    if query.data == "no":
        await query.edit_message_text("Okay, please re-enter the names separated by spaces.")
        return ASK_NAMES

    parsed = context.chat_data["parsed"]
    participants = context.user_data["participants"]
    currency = context.chat_data.get("currency", "$")

    if context.user_data["split_mode"] == "even":
        splits = compute_splits(parsed, participants)
        await query.edit_message_text("*Even Split:*\n" + format_split(splits, currency), parse_mode="Markdown")
        return ConversationHandler.END

    await query.edit_message_text("Perfect! Let's assign the items.")
    context.chat_data["assignments"] = {}
    context.chat_data["current_selector"] = 0
    return await ask_next_person(query.message, context)


async def ask_next_person(message, context: ContextTypes.DEFAULT_TYPE):
    parsed = context.chat_data["parsed"]
    assignments = context.chat_data["assignments"]
    participants = context.user_data["participants"]
    currency = context.chat_data.get("currency", "$")
    idx = context.chat_data["current_selector"]

    if idx >= len(participants):
        return await finalize_split(message, context)

    current_person = participants[idx]
    buttons = [
        [InlineKeyboardButton(f"{it.description} ({currency}{it.line_total:.2f})", callback_data=f"select|{i}")]
        for i, it in enumerate(parsed.items)
        if current_person not in assignments.get(i, [])
    ]
    buttons.append([InlineKeyboardButton("✅ Done", callback_data="done")])

    await message.reply_text(
        f"Hi {current_person}, please select the items you ordered:",
        reply_markup=InlineKeyboardMarkup(buttons)
    )
    return ITEM_SELECTION


async def handle_selection(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    await query.answer()
    idx = context.chat_data["current_selector"]
    participants = context.user_data["participants"]
    current_person = participants[idx]

    if query.data == "done":
        context.chat_data["current_selector"] = idx + 1
        await query.message.reply_text(f"Thanks, {current_person}!")
        return await ask_next_person(query.message, context)

    _, item_index = query.data.split("|")
    item_index = int(item_index)
    item = context.chat_data["parsed"].items[item_index]
    context.chat_data["assignments"].setdefault(item_index, []).append(current_person)
    await query.message.reply_text(f"Added {item.description} to {current_person}'s order.")
    return await ask_next_person(query.message, context)


async def finalize_split(message, context: ContextTypes.DEFAULT_TYPE):
    splits = compute_splits(
        context.chat_data["parsed"],
        context.user_data["participants"],
        assignments=context.chat_data["assignments"],
        mode="item",
    )
    currency = context.chat_data.get("currency", "$")
    await message.reply_text("*Final Split:*\n" + format_split(splits, currency), parse_mode="Markdown")
    return ConversationHandler.END


# --- Main entry ---
def main():
    application = ApplicationBuilder().token(TOKEN).build()

    restart = MessageHandler(filters.TEXT & filters.Regex(f"^{RESTART_LABEL}$"), handle_restart)
    conv = ConversationHandler(
        entry_points=[
            MessageHandler(filters.TEXT & filters.Regex(f"^{START_LABEL}$"), handle_receipt_start),
            restart,
        ],
        states={
            WAIT_RECEIPT: [MessageHandler(filters.PHOTO, handle_receipt),
                           MessageHandler(filters.TEXT & filters.Regex(f"^{SCAN_LABEL}$"), handle_scan),
                           restart],
            ASK_SPLIT_MODE: [MessageHandler(filters.TEXT & ~filters.COMMAND, ask_names)],
            ASK_NAMES: [MessageHandler(filters.TEXT & ~filters.COMMAND, confirm_people)],
            CONFIRM_PEOPLE: [CallbackQueryHandler(confirm_people_response)],
            ITEM_SELECTION: [CallbackQueryHandler(handle_selection)],
        },
        fallbacks=[restart],
    )

    application.add_handler(conv)
    logger.info("Bot started (polling)...")
    application.run_polling()


if __name__ == "__main__":
    main()

import logging
import requests
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Telegram rejects messages above 4096 characters
MAX_MESSAGE_LENGTH = 4000
MAX_LISTED_ITEMS = 10

def _get_telegram_settings():
    """Reads the Telegram settings without failing the caller"""
    try:
        from core.config import settings
        telegram_token = getattr(settings, 'TELEGRAM_BOT_TOKEN', None)
        telegram_chat_id = getattr(settings, 'TELEGRAM_CHAT_ID', None)
        return telegram_token, telegram_chat_id
    except Exception as e:
        logger.warning(f"Could not read Telegram settings: {e}", exc_info=True)
        return None, None

def _escape(value) -> str:
    return str(value).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")

def send_telegram_notification(message: str, chat_id: Optional[str] = None) -> bool:
    """
    Sends an operator notification to Telegram.

    Args:
        message: HTML formatted text
        chat_id: target chat (defaults to TELEGRAM_CHAT_ID)

    Returns:
        True when Telegram accepted the message, False otherwise
    """
    if not message or not isinstance(message, str) or not message.strip():
        logger.warning("Telegram: empty message, nothing sent")
        return False

    telegram_token, default_chat_id = _get_telegram_settings()
    telegram_chat_id = chat_id or default_chat_id

    if not telegram_token or not telegram_chat_id:
        logger.info(
            f"Telegram notifications not configured: token={'set' if telegram_token else 'missing'}, "
            f"chat_id={'set' if telegram_chat_id else 'missing'}"
        )
        return False

    url = f"https://api.telegram.org/bot{telegram_token.strip()}/sendMessage"
    payload = {
        "chat_id": str(telegram_chat_id).strip(),
        "text": message[:MAX_MESSAGE_LENGTH],
        "parse_mode": "HTML"
    }

    try:
        response = requests.post(url, json=payload, timeout=10)
        response.raise_for_status()

        result = response.json()
        if result.get("ok"):
            logger.info(f"Telegram notification delivered to chat {telegram_chat_id}")
            return True
        logger.error(f"Telegram API returned an error: {result.get('description', 'Unknown error')}")
        return False

    except requests.exceptions.Timeout:
        logger.warning("Telegram: timed out sending notification (10s)")
        return False
    except requests.exceptions.ConnectionError as e:
        logger.warning(f"Telegram: connection error: {e}")
        return False
    except requests.exceptions.HTTPError as e:
        status_code = e.response.status_code if e.response is not None else "unknown"
        logger.error(f"Telegram HTTP error: {e} (status: {status_code})")
        return False
    except requests.exceptions.RequestException as e:
        logger.error(f"Telegram: request failed: {e}")
        return False
    except ValueError as e:
        logger.error(f"Telegram: response was not JSON: {e}")
        return False

def format_defaulted_notification(defaulted_ptps: int, defaulted_manual_ptps: int, check_date: str) -> str:
    """
    Summary sent after the scheduled defaulted-PTP check.
    """
    total = int(defaulted_ptps or 0) + int(defaulted_manual_ptps or 0)
    message = "⚠️ <b>PTPs defaulted</b>\n\n"
    message += f"📅 Check date: <b>{_escape(check_date)}</b>\n"
    message += f"📋 PTP: <b>{int(defaulted_ptps or 0)}</b>\n"
    message += f"✍️ Manual PTP: <b>{int(defaulted_manual_ptps or 0)}</b>\n"
    message += f"Σ Total: <b>{total}</b>"
    return message

def format_bulk_update_notification(processed: int, total: int, updated_ptps: int,
                                    updated_manual_ptps: int, errors: Iterable[str]) -> str:
    """
    Summary sent when a bulk PTP update finished with errors.
    Only the first MAX_LISTED_ITEMS errors are listed.
    """
    errors = list(errors or [])
    message = "❗ <b>Bulk PTP update finished with errors</b>\n\n"
    message += f"📦 Records: <b>{processed}/{total}</b> processed\n"
    message += f"✅ Paid: PTP <b>{updated_ptps}</b>, Manual PTP <b>{updated_manual_ptps}</b>\n"
    message += f"🛑 Errors: <b>{len(errors)}</b>\n"
    for err in errors[:MAX_LISTED_ITEMS]:
        message += f"• {_escape(err)}\n"
    if len(errors) > MAX_LISTED_ITEMS:
        message += f"… and {len(errors) - MAX_LISTED_ITEMS} more"
    return message.rstrip("\n")

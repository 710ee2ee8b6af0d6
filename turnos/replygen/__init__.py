# turnos/replygen/__init__.py
from .core import (
    MENU_HINT,
    acknowledgement_reply,
    append_menu_hint,
    booking_menu,
    day_menu,
    format_menu_message,
    generate_reply,
    missing_field_prompt,
    reply_mentions_field,
    slot_menu,
)

"""
Record shaping for tool results.

Turns telethon entities and messages into plain dicts that serialize to JSON.
"""

from typing import Any, Dict, Optional

from telethon.tl.types import Channel, ChannelForbidden, Chat, ChatForbidden


def group_info(entity: Any) -> Optional[Dict[str, Any]]:
    """
    Describe a group entity.

    Broadcast channels and non-group peers are skipped.

    Args:
        entity: telethon chat entity

    Returns:
        Group record, or None if the entity is not a group
    """
    if isinstance(entity, Chat):
        return {
            "id": entity.id,
            "title": entity.title,
            "type": "chat",
            "members": entity.participants_count,
            "deactivated": bool(entity.deactivated),
        }

    if isinstance(entity, ChatForbidden):
        return {
            "id": entity.id,
            "title": entity.title,
            "type": "chat_forbidden",
        }

    if isinstance(entity, Channel):
        if not entity.megagroup:
            return None
        return {
            "id": entity.id,
            "title": entity.title,
            "type": "megagroup",
            "username": entity.username,
            "members": entity.participants_count,
            "verified": bool(entity.verified),
            "restricted": bool(entity.restricted),
        }

    if isinstance(entity, ChannelForbidden):
        if not entity.megagroup:
            return None
        return {
            "id": entity.id,
            "title": entity.title,
            "type": "megagroup_forbidden",
        }

    return None


def message_info(message: Any) -> Optional[Dict[str, Any]]:
    """
    Describe a message.

    Args:
        message: telethon Message or MessageService

    Returns:
        Message record, or None for empty placeholders
    """
    if message is None or getattr(message, "id", None) is None:
        return None

    date = getattr(message, "date", None)
    info: Dict[str, Any] = {
        "id": message.id,
        "date": int(date.timestamp()) if date else 0,
        "type": "service" if getattr(message, "action", None) is not None else "message",
    }

    text = getattr(message, "message", None)
    if text:
        info["text"] = text

    if getattr(message, "out", False):
        info["is_outgoing"] = True
    if getattr(message, "mentioned", False):
        info["is_mentioned"] = True

    media = getattr(message, "media", None)
    if media is not None:
        info["media_type"] = type(media).__name__

    sender_id = getattr(message, "sender_id", None)
    if sender_id is not None:
        info["sender_id"] = sender_id

    reply_to = getattr(message, "reply_to", None)
    reply_to_msg_id = getattr(reply_to, "reply_to_msg_id", None)
    if reply_to_msg_id:
        info["reply_to_msg_id"] = reply_to_msg_id

    views = getattr(message, "views", None)
    if views:
        info["views"] = views

    edit_date = getattr(message, "edit_date", None)
    if edit_date:
        info["edit_date"] = int(edit_date.timestamp())

    return info

"""
Conversation transcript helpers.

transform_user_messages() projects the stored userChat.messages array into the
provider wire format: system and hidden scenario-context turns are dropped,
image/video messages become short text turns, like/dislike actions become
synthetic user feedback turns, and only the last `master` message survives.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

TOKYO = ZoneInfo("Asia/Tokyo")

_STARS = re.compile(r'\*.*?\*')

# Fields copied from a stored text message into its wire-format turn
_TEXT_FIELDS = ('name', 'timestamp', 'custom_relation', 'nsfw', 'promptId')
_VIDEO_FIELDS = ('name', 'timestamp', 'custom_relation')


def tokyo_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp in the en-US locale format used across stored messages, e.g. '1/5/2025, 3:04:05 PM'."""
    now = (now or datetime.now(TOKYO)).astimezone(TOKYO)
    hour = now.hour % 12 or 12
    meridiem = 'AM' if now.hour < 12 else 'PM'
    return f"{now.month}/{now.day}/{now.year}, {hour}:{now.minute:02d}:{now.second:02d} {meridiem}"


def remove_content_between_stars(text: Optional[str]) -> Optional[str]:
    """Strip *actions* and double quotes (used for the last-message preview)."""
    if not text:
        return text
    return _STARS.sub('', text).replace('"', '')


def is_image_message(message: Dict[str, Any]) -> bool:
    return bool(message.get('imageId') or message.get('batchId')
                or message.get('type') in ('image', 'mergeFace'))


def _find_action(message: Dict[str, Any], action_type: str) -> Optional[Dict[str, Any]]:
    for action in message.get('actions') or []:
        if action.get('type') == action_type:
            return action
    return None


def _feedback_turn(content: str, action: Dict[str, Any]) -> Dict[str, Any]:
    return {'role': 'user', 'content': content, 'timestamp': action.get('date') or tokyo_timestamp()}


def transform_user_messages(messages: List[Dict[str, Any]],
                            translations: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    translations = translations or {}
    transformed: List[Dict[str, Any]] = []

    for message in messages:
        role = message.get('role')
        if role == 'system':
            continue
        if message.get('name') == 'context' and message.get('hidden') is True and role == 'user':
            continue
        if message.get('image_request') is True:
            continue

        if message.get('type') == 'image' and message.get('imageUrl'):
            if message.get('prompt'):
                result = translations.get('image_prompt_result') or 'The image of you I requested has been generated!'
                transformed.append({
                    'role': 'user',
                    'content': f'{result} : " {message["prompt"]} " ]',
                    'hidden': True,
                })
            like = _find_action(message, 'like')
            if like:
                transformed.append(_feedback_turn(translations.get('image_liked') or '👍 I liked this image', like))
            continue

        if message.get('type') == 'video' and message.get('videoUrl'):
            video_turn = {
                'role': role,
                'content': f"{translations.get('video_sent_message', 'I sent you a video')}: {message.get('content')}",
            }
            for field in _VIDEO_FIELDS:
                if message.get(field):
                    video_turn[field] = message[field]
            transformed.append(video_turn)
            like = _find_action(message, 'like')
            if like:
                transformed.append(_feedback_turn(translations.get('video_liked') or '👍 I liked this video', like))
            continue

        content = message.get('content')
        if (content and not content.startswith('[Image]') and not content.startswith('[Video]')
                and not message.get('imageId') and not message.get('videoId')):
            text_turn = {'role': role, 'content': content}
            for field in _TEXT_FIELDS:
                if message.get(field):
                    text_turn[field] = message[field]
            transformed.append(text_turn)

            like = _find_action(message, 'like')
            dislike = _find_action(message, 'dislike')
            if like:
                default = '👍 I liked your response' if role == 'assistant' else '👍 I liked this message'
                transformed.append(_feedback_turn(translations.get('message_liked') or default, like))
            elif dislike:
                default = "👎 I didn't like your response" if role == 'assistant' else "👎 I didn't like this message"
                transformed.append(_feedback_turn(translations.get('message_disliked') or default, dislike))

    last_master = max((i for i, m in enumerate(transformed) if m.get('name') == 'master'), default=-1)
    return [m for i, m in enumerate(transformed) if m.get('name') != 'master' or i == last_master]


def _image_key(message: Dict[str, Any]) -> Optional[Tuple[str, Any]]:
    if message.get('imageId'):
        return ('imageId', message['imageId'])
    if message.get('batchId'):
        return ('batchId', message['batchId'])
    return None


def merge_messages(existing: List[Dict[str, Any]],
                   new_messages: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """
    Merge new messages into a transcript.

    A text message replaces the first existing text message with the same
    content. An image message replaces the existing message carrying the same
    imageId (or batchId); images are never matched by content, and an image
    without either id always appends.

    Returns:
        (combined messages, number of appended user/assistant messages)
    """
    combined = list(existing)
    added = 0
    for new in new_messages:
        index = -1
        if is_image_message(new):
            key = _image_key(new)
            if key:
                field, value = key
                for i, msg in enumerate(combined):
                    if msg.get(field) == value:
                        index = i
                        break
        else:
            for i, msg in enumerate(combined):
                if msg.get('content') == new.get('content') and not is_image_message(msg):
                    index = i
                    break
        if index != -1:
            combined[index] = new
        else:
            combined.append(new)
            if new.get('role') in ('user', 'assistant'):
                added += 1
    return combined, added

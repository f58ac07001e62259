"""Slack notices for task recovery and failure."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

NOTICE_EMOJI = {
    "requeued": ":arrows_counterclockwise:",
    "failed": ":red_circle:",
    "info": ":information_source:",
}


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """WebClient for ``token``, or None when Slack is not configured."""
    if not token:
        return None
    from slack_sdk import WebClient

    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Post ``text`` (and optional blocks) to ``channel``."""
    web = get_client(token)
    if web is None:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        sent = web.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"chat.postMessage failed: {e.response.get('error')}") from e

    return SlackMessage(channel=sent["channel"], ts=sent["ts"], text=text)


def format_task_notification(
    agent_name: str, task_id: int, text: str, kind: str = "info"
) -> list[dict]:
    """One mrkdwn section naming the agent and task."""
    emoji = NOTICE_EMOJI.get(kind, NOTICE_EMOJI["info"])
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{agent_name}* · task `#{task_id}`\n{text}",
            },
        }
    ]


def notify(config, text: str, task_id: int | None = None, kind: str = "info") -> bool:
    """Post a notice to the configured channel. No-op without token and channel.

    Delivery failures are logged and swallowed; returns whether a message went out.
    """
    if not (config.slack_bot_token and config.slack_channel):
        return False

    blocks = None
    if task_id is not None:
        blocks = format_task_notification(config.agent_name, task_id, text, kind)

    try:
        send_message(config.slack_bot_token, config.slack_channel, text, blocks=blocks)
    except (SlackError, OSError) as e:
        logger.warning("Slack notification failed: %s", e)
        return False
    return True

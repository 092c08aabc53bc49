"""Admin notifications for workflow events.

Notifications are a fire-and-forget side channel: every ``notify_*`` method
returns a NotificationResult and never raises, so a lost notification can
never fail a transition that already committed.

- TelegramNotifier: Telegram Bot API ``sendMessage`` over httpx
- LoggingNotifier: Writes notifications to the log
- CompositeNotifier: Fans out to several notifiers
- NullNotifier: Discards notifications
"""

import asyncio
import html
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from src.devpipeline.state.models import ItemType


logger = logging.getLogger(__name__)

MAX_SUMMARY_LENGTH = 2800


class NotificationResult(BaseModel):
    """Outcome of a notification attempt."""

    success: bool
    error: Optional[str] = None


class NotificationButton(BaseModel):
    """Inline action attached to a notification.

    Exactly one of ``url`` or ``action`` is set; ``action`` is an opaque
    callback string such as ``approve:12``.
    """

    text: str
    url: Optional[str] = None
    action: Optional[str] = None


class NotificationMessage(BaseModel):
    """A rendered notification.

    Attributes:
        kind: Notification method that produced the message.
        text: HTML-formatted body.
        issue_number: Issue the message concerns.
        buttons: Rows of inline buttons.
    """

    kind: str
    text: str
    issue_number: Optional[int] = None
    buttons: List[List[NotificationButton]] = Field(default_factory=list)


def _escape(value: str) -> str:
    return html.escape(value, quote=False)


def _truncate(value: str, limit: int = MAX_SUMMARY_LENGTH) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


def _type_label(item_type: ItemType) -> str:
    return "🐛 Bug" if item_type == ItemType.BUG else "✨ Feature"


class Notifier(ABC):
    """Base class rendering workflow notifications.

    Subclasses implement ``_deliver``. The public ``notify_*`` methods render
    a NotificationMessage and pass it to ``send``, which converts any
    delivery exception into a failed result.
    """

    def __init__(self, repository_url: str = ""):
        self.repository_url = repository_url.rstrip("/")

    @abstractmethod
    async def _deliver(self, message: NotificationMessage) -> NotificationResult:
        """Deliver a rendered message."""

    async def send(self, message: NotificationMessage) -> NotificationResult:
        """Deliver ``message``, never raising."""
        try:
            return await self._deliver(message)
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                extra={
                    "notifier": type(self).__name__,
                    "kind": message.kind,
                    "issue_number": message.issue_number,
                    "error": str(e),
                },
            )
            return NotificationResult(success=False, error=str(e))

    def issue_url(self, issue_number: int) -> str:
        return f"{self.repository_url}/issues/{issue_number}"

    def pr_url(self, pr_number: int) -> str:
        return f"{self.repository_url}/pull/{pr_number}"

    def _issue_button(self, issue_number: int) -> List[NotificationButton]:
        return [NotificationButton(text="📋 View Issue", url=self.issue_url(issue_number))]

    def _pr_button(self, pr_number: int) -> List[NotificationButton]:
        return [NotificationButton(text="🔀 View PR", url=self.pr_url(pr_number))]

    # ---- Intake

    async def notify_item_ready_for_routing(
        self,
        title: str,
        issue_number: int,
        item_type: ItemType = ItemType.FEATURE,
    ) -> NotificationResult:
        text = (
            f"<b>Approved:</b> ✅ Ready for routing\n{_type_label(item_type)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number}\n\n"
            "Choose where this item should start."
        )
        routes = [
            NotificationButton(text="Product Dev", action=f"route:{issue_number}:product-dev"),
            NotificationButton(text="Product Design", action=f"route:{issue_number}:product-design"),
            NotificationButton(text="Tech Design", action=f"route:{issue_number}:tech-design"),
        ]
        second = [
            NotificationButton(text="Implementation", action=f"route:{issue_number}:implementation"),
            NotificationButton(text="Backlog", action=f"route:{issue_number}:backlog"),
        ]
        return await self.send(
            NotificationMessage(
                kind="item_ready_for_routing",
                text=text,
                issue_number=issue_number,
                buttons=[routes, second, self._issue_button(issue_number)],
            )
        )

    async def notify_item_routed(
        self,
        title: str,
        issue_number: int,
        destination_label: str,
    ) -> NotificationResult:
        text = (
            f"<b>Routed:</b> ➡️ {_escape(destination_label)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number}"
        )
        return await self.send(
            NotificationMessage(
                kind="item_routed",
                text=text,
                issue_number=issue_number,
                buttons=[self._issue_button(issue_number)],
            )
        )

    # ---- Design and implementation

    async def notify_design_pr_ready(
        self,
        phase: str,
        title: str,
        issue_number: int,
        pr_number: int,
        is_revision: bool = False,
        item_type: ItemType = ItemType.FEATURE,
    ) -> NotificationResult:
        status = "🔄 Design Updated" if is_revision else "✅ Design Ready"
        text = (
            f"<b>Agent ({_escape(phase)}):</b> {status}\n{_type_label(item_type)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number} → PR #{pr_number}\n"
            "📊 Review Status: Waiting for Review"
        )
        actions = [
            NotificationButton(text="✅ Approve & Merge", action=f"design_approve:{issue_number}:{pr_number}"),
            NotificationButton(text="📝 Request Changes", action=f"design_changes:{issue_number}:{pr_number}"),
        ]
        return await self.send(
            NotificationMessage(
                kind="design_pr_ready",
                text=text,
                issue_number=issue_number,
                buttons=[actions, self._pr_button(pr_number)],
            )
        )

    async def notify_pr_ready(
        self,
        title: str,
        issue_number: int,
        pr_number: int,
        is_revision: bool = False,
        item_type: ItemType = ItemType.FEATURE,
        summary: Optional[str] = None,
    ) -> NotificationResult:
        status = "🔄 PR Updated" if is_revision else "✅ PR Ready"
        summary_section = ""
        if summary:
            heading = "Changes:" if is_revision else "Summary:"
            summary_section = f"\n\n<b>{heading}</b>\n{_escape(_truncate(summary))}"
        text = (
            f"<b>Agent (Implementation):</b> {status}\n{_type_label(item_type)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number} → PR #{pr_number}\n"
            "📊 Status: PR Review (Waiting for Review)\n\n"
            "Waiting for PR Review agent to review."
            f"{summary_section}"
        )
        return await self.send(
            NotificationMessage(
                kind="pr_ready",
                text=text,
                issue_number=issue_number,
                buttons=[self._pr_button(pr_number)],
            )
        )

    async def notify_pr_review_complete(
        self,
        title: str,
        issue_number: int,
        pr_number: int,
        approved: bool,
        summary: str,
        item_type: ItemType = ItemType.FEATURE,
    ) -> NotificationResult:
        status = "✅ PR Approved" if approved else "📝 Changes Requested"
        state = "Approved - Ready to Merge" if approved else "Changes Requested - Implementation"
        text = (
            f"<b>Agent (PR Review):</b> {status}\n{_type_label(item_type)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number} → PR #{pr_number}\n"
            f"📊 Status: {state}\n\n<b>Summary:</b> {_escape(_truncate(summary))}"
        )
        buttons = [self._pr_button(pr_number) + self._issue_button(issue_number)]
        if approved:
            buttons.insert(0, [
                NotificationButton(text="✅ Merge", action=f"merge:{issue_number}:{pr_number}"),
                NotificationButton(text="🔄 Request Changes", action=f"reqchanges:{issue_number}:{pr_number}"),
            ])
        return await self.send(
            NotificationMessage(
                kind="pr_review_complete",
                text=text,
                issue_number=issue_number,
                buttons=buttons,
            )
        )

    async def notify_merge_complete(
        self,
        title: str,
        issue_number: int,
        pr_number: int,
        merge_commit_sha: Optional[str] = None,
    ) -> NotificationResult:
        text = f"<b>Merged:</b> ✅ PR #{pr_number}\n\n📋 {_escape(title)}\n🔗 Issue #{issue_number}"
        buttons = [self._pr_button(pr_number)]
        if merge_commit_sha:
            text += f"\n🔖 <code>{merge_commit_sha[:7]}</code>"
            buttons.append([
                NotificationButton(
                    text="↩️ Revert",
                    action=f"revert:{issue_number}:{pr_number}:{merge_commit_sha[:7]}",
                )
            ])
        return await self.send(
            NotificationMessage(
                kind="merge_complete",
                text=text,
                issue_number=issue_number,
                buttons=buttons,
            )
        )

    # ---- Clarifications and decisions

    async def notify_needs_clarification(
        self,
        phase: str,
        title: str,
        issue_number: int,
        question: str,
        item_type: ItemType = ItemType.FEATURE,
    ) -> NotificationResult:
        text = (
            f"🤔 <b>Agent Needs Clarification</b>\n\n<b>Phase:</b> {_escape(phase)}\n"
            f"{_type_label(item_type)}\n\n📋 {_escape(title)}\n🔗 Issue #{issue_number}\n\n"
            f"<b>Question:</b>\n\n{_escape(_truncate(question))}"
        )
        return await self.send(
            NotificationMessage(
                kind="needs_clarification",
                text=text,
                issue_number=issue_number,
                buttons=[
                    self._issue_button(issue_number),
                    [NotificationButton(text="✅ Clarification Received", action=f"clarified:{issue_number}")],
                ],
            )
        )

    async def notify_decision_needed(
        self,
        phase: str,
        title: str,
        issue_number: int,
        summary: str,
        options_count: int,
        item_type: ItemType = ItemType.FEATURE,
        is_revision: bool = False,
    ) -> NotificationResult:
        status = "🔄 Options Updated" if is_revision else "✅ Options Ready"
        text = (
            f"<b>Agent ({_escape(phase)}):</b> {status}\n{_type_label(item_type)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number}\n📊 Options: {options_count}\n\n"
            f"<b>Summary:</b>\n{_escape(_truncate(summary))}"
        )
        return await self.send(
            NotificationMessage(
                kind="decision_needed",
                text=text,
                issue_number=issue_number,
                buttons=[
                    [NotificationButton(text="✅ Choose Recommended", action=f"chooserec:{issue_number}")],
                    self._issue_button(issue_number),
                ],
            )
        )

    async def notify_decision_submitted(
        self,
        title: str,
        issue_number: int,
        selected_option_title: str,
        routed_to: Optional[str] = None,
        item_type: ItemType = ItemType.FEATURE,
    ) -> NotificationResult:
        if routed_to:
            routed = (
                f"<b>Routed to:</b> {_escape(routed_to)}\n\n"
                "The next agent will pick this up automatically."
            )
        else:
            routed = "Selection recorded. The agent will process this in the next workflow run."
        text = (
            f"<b>Decision Submitted:</b> ✅ Confirmed\n{_type_label(item_type)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number}\n\n"
            f"<b>Selected:</b> {_escape(selected_option_title)}\n{routed}"
        )
        return await self.send(
            NotificationMessage(
                kind="decision_submitted",
                text=text,
                issue_number=issue_number,
                buttons=[self._issue_button(issue_number)],
            )
        )

    # ---- Status and errors

    async def notify_status_changed(
        self,
        title: str,
        issue_number: int,
        from_status: Optional[str],
        to_status: str,
    ) -> NotificationResult:
        text = (
            f"<b>Status Changed:</b> {_escape(from_status or 'None')} → {_escape(to_status)}\n\n"
            f"📋 {_escape(title)}\n🔗 Issue #{issue_number}"
        )
        return await self.send(
            NotificationMessage(
                kind="status_changed",
                text=text,
                issue_number=issue_number,
                buttons=[self._issue_button(issue_number)],
            )
        )

    async def notify_agent_error(
        self,
        phase: str,
        title: str,
        issue_number: Optional[int],
        error: str,
    ) -> NotificationResult:
        issue_info = f"\n🔗 Issue #{issue_number}" if issue_number else ""
        text = (
            f"<b>Agent ({_escape(phase)}):</b> ❌ Error\n\n📋 {_escape(title)}{issue_info}\n"
            f"⚠️ {_escape(error[:200])}\n\nCheck logs for details."
        )
        return await self.send(
            NotificationMessage(
                kind="agent_error",
                text=text,
                issue_number=issue_number,
                buttons=[self._issue_button(issue_number)] if issue_number else [],
            )
        )


def parse_chat_id(raw: str) -> Tuple[str, Optional[int]]:
    """Split "chatId:threadId" into its parts.

    Example:
        >>> parse_chat_id("-1001234:42")
        ('-1001234', 42)
        >>> parse_chat_id("-1001234")
        ('-1001234', None)
    """
    head, sep, tail = raw.rpartition(":")
    if sep and head and tail.isdigit():
        return head, int(tail)
    return raw, None


class TelegramNotifier(Notifier):
    """Sends notifications through the Telegram Bot API.

    Delivery is retried with a fixed delay because notifications are
    idempotent from the workflow's point of view.

    Attributes:
        bot_token: Telegram bot token.
        chat_id: Target chat, optionally "chatId:threadId" for topics.
        api_url: Bot API base URL.
        max_attempts: Delivery attempts per message.
        retry_delay: Seconds between attempts.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        repository_url: str = "",
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_delay: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(repository_url)
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _payload(self, message: NotificationMessage) -> Dict[str, Any]:
        chat_id, thread_id = parse_chat_id(self.chat_id)
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": message.text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if thread_id is not None:
            payload["message_thread_id"] = thread_id
        if message.buttons:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [
                        {"text": b.text, "url": b.url}
                        if b.url
                        else {"text": b.text, "callback_data": b.action}
                        for b in row
                    ]
                    for row in message.buttons
                ]
            }
        return payload

    async def _deliver(self, message: NotificationMessage) -> NotificationResult:
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        payload = self._payload(message)
        error = "Max retries reached"
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.client.post(url, json=payload)
                if response.status_code == 200:
                    logger.info(
                        "Telegram notification sent",
                        extra={"kind": message.kind, "issue_number": message.issue_number},
                    )
                    return NotificationResult(success=True)
                error = f"Telegram API error: {response.status_code} {response.text}"
            except httpx.RequestError as e:
                error = f"Telegram request failed: {e}"

            logger.warning(
                "Telegram notification attempt failed",
                extra={
                    "kind": message.kind,
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "error": error,
                },
            )
            if attempt < self.max_attempts:
                await self._sleep(self.retry_delay)

        return NotificationResult(success=False, error=error)


class LoggingNotifier(Notifier):
    """Writes notifications to the log."""

    async def _deliver(self, message: NotificationMessage) -> NotificationResult:
        logger.info(
            "Notification: %s",
            message.kind,
            extra={"kind": message.kind, "issue_number": message.issue_number, "text": message.text},
        )
        return NotificationResult(success=True)


class CompositeNotifier(Notifier):
    """Delivers to every child; succeeds only if all children succeed."""

    def __init__(self, notifiers: Optional[List[Notifier]] = None, repository_url: str = ""):
        super().__init__(repository_url)
        self._notifiers: List[Notifier] = notifiers or []

    @property
    def notifiers(self) -> List[Notifier]:
        return list(self._notifiers)

    async def _deliver(self, message: NotificationMessage) -> NotificationResult:
        errors = []
        for notifier in self._notifiers:
            result = await notifier.send(message)
            if not result.success:
                errors.append(f"{type(notifier).__name__}: {result.error}")
        if errors:
            return NotificationResult(success=False, error="; ".join(errors))
        return NotificationResult(success=True)


class NullNotifier(Notifier):
    """Discards notifications."""

    async def _deliver(self, message: NotificationMessage) -> NotificationResult:
        return NotificationResult(success=True)

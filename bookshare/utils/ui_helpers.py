import os
import json
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from bookshare.policy import ShareAction
from bookshare.share import ChatMessage, Notification, Share, format_timestamp
from bookshare.timeline import TimelineStep

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "BOOKSHARE_CLI_OUTPUT"

_console = Console()

_STATUS_LABELS = {
    "REQUESTED": "Requested",
    "READY": "Ready",
    "PICKED_UP": "Picked Up",
    "RETURNED": "Returned",
    "HOME_SAFE": "Home Safe",
    "DISPUTED": "Disputed",
    "DECLINED": "Declined",
}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def status_label(share: Share) -> str:
    label = _STATUS_LABELS[share.status.name]
    return f"{label} (disputed)" if share.is_disputed and share.status.name != "DISPUTED" else label


def _date(value) -> str:
    return value.date().isoformat() if value else "-"


def _share_row(share: Share) -> Dict[str, Any]:
    return {
        "id": share.id,
        "title": share.book_title,
        "status": share.status.name,
        "isDisputed": share.is_disputed,
        "returnDate": format_timestamp(share.return_date),
    }


def print_share_list(shares: List[Share], badges: Optional[Dict[int, int]] = None) -> None:
    """Print shares in the current output mode.
    - plain: '#ID Title [Status] due DATE' lines, or 'No shares.'
    - json: JSON array
    - rich: Rich table
    """
    mode = get_output_mode()
    badges = badges or {}

    if not shares:
        print("No shares.")
        return

    if mode == "json":
        payload = [dict(_share_row(s), unread=badges.get(s.id, 0)) for s in shares]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Shares", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Status", style="white")
        table.add_column("Return", style="white")
        table.add_column("Unread", style="yellow")
        for s in shares:
            unread = badges.get(s.id, 0)
            table.add_row(str(s.id), s.book_title, status_label(s), _date(s.return_date), str(unread) if unread else "")
        _console.print(table)
    else:
        for s in shares:
            unread = badges.get(s.id, 0)
            suffix = f" ({unread} new)" if unread else ""
            print(f"#{s.id} {s.book_title} [{status_label(s)}] due {_date(s.return_date)}{suffix}")


def print_timeline(steps: List[TimelineStep]) -> None:
    mode = get_output_mode()

    if mode == "json":
        payload = [
            {
                "status": step.status.name,
                "label": step.label,
                "completed": step.completed,
                "current": step.current,
                "terminal": step.terminal.value if step.terminal else None,
            }
            for step in steps
        ]
        print(json.dumps(payload, ensure_ascii=False))
        return

    lines = []
    for step in steps:
        marker = "x" if step.completed else (">" if step.current else " ")
        lines.append(f"[{marker}] {step.label} - {step.description}")
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="🕒 Timeline", border_style="blue"))
    else:
        for line in lines:
            print(line)


def print_actions(actions: List[ShareAction]) -> None:
    mode = get_output_mode()

    if mode == "json":
        payload = [{"action": a.kind.value, "label": a.label} for a in actions]
        print(json.dumps(payload, ensure_ascii=False))
    elif not actions:
        print("No actions available.")
    else:
        for a in actions:
            print(f"{a.kind.value}: {a.label}")


def print_notifications(notifications: List[Notification]) -> None:
    mode = get_output_mode()

    if not notifications:
        print("No unread notifications.")
        return

    if mode == "json":
        print(json.dumps([n.to_dict() for n in notifications], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🔔 Notifications", header_style="bold cyan")
        table.add_column("Share", style="magenta", no_wrap=True)
        table.add_column("Type", style="white")
        table.add_column("Message", style="white")
        for n in notifications:
            table.add_row(str(n.share_id or ""), n.notification_type, n.message)
        _console.print(table)
    else:
        for n in notifications:
            share = f"#{n.share_id} " if n.share_id is not None else ""
            print(f"{share}{n.notification_type}: {n.message}")


def print_messages(messages: List[ChatMessage]) -> None:
    """Print chat messages oldest first, which reads naturally in a terminal."""
    mode = get_output_mode()

    if not messages:
        print("No messages yet.")
        return

    ordered = list(reversed(messages))
    if mode == "json":
        print(json.dumps([m.to_dict() for m in ordered], ensure_ascii=False))
    elif mode == "rich":
        for m in ordered:
            _console.print(f"[dim]{m.sent_at:%Y-%m-%d %H:%M}[/] [bold]{m.sender_name or 'Unknown'}[/]: {m.content}")
    else:
        for m in ordered:
            print(f"{m.sent_at:%Y-%m-%d %H:%M} {m.sender_name or 'Unknown'}: {m.content}")

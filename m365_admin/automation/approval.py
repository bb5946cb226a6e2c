"""
Approval workflow emails — render a request from a Jinja2 template and send it
through Graph sendMail. Approvers answer with the mailto: links in the message.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..graph.client import GraphClient
from ..operations.base import Operation, OperationError, OperationResult, arg, user_path

logger = logging.getLogger("m365_admin.automation.approval")

TEMPLATE_DIR = Path(__file__).parent / "templates"


def render_template(name: str, **context: Any) -> str:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    return env.get_template(name).render(**context)


def mailto_link(address: str, subject: str, body: str = "") -> str:
    link = f"mailto:{address}?subject={quote(subject)}"
    if body:
        link += f"&body={quote(body)}"
    return link


def build_message(
    subject: str,
    html_body: str,
    to: list[str],
    cc: Optional[list[str]] = None,
    reply_to: Optional[str] = None,
    importance: str = "normal",
) -> dict:
    """sendMail request body."""
    if not to:
        raise OperationError("At least one recipient is required.")
    message: dict[str, Any] = {
        "subject": subject,
        "importance": importance,
        "body": {"contentType": "HTML", "content": html_body},
        "toRecipients": [{"emailAddress": {"address": a}} for a in to],
    }
    if cc:
        message["ccRecipients"] = [{"emailAddress": {"address": a}} for a in cc]
    if reply_to:
        message["replyTo"] = [{"emailAddress": {"address": reply_to}}]
    return {"message": message, "saveToSentItems": True}


async def send_mail(graph: GraphClient, sender: str, payload: dict) -> dict:
    """POST users/{sender}/sendMail. Graph answers 202 with an empty body."""
    if not sender:
        raise OperationError("A sender mailbox is required to send mail.")
    response = await graph.post(user_path(sender, "sendMail"), payload)
    logger.info(f"Mail '{payload['message']['subject']}' sent from {sender}")
    return response


def parse_details(details: Any) -> dict[str, str]:
    """`KEY=VALUE` strings (or a dict) into an ordered dict of request details."""
    if not details:
        return {}
    if isinstance(details, dict):
        return {str(k): str(v) for k, v in details.items()}
    parsed = {}
    for item in details:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise OperationError(f"Expected KEY=VALUE detail, got {item!r}")
        parsed[key.strip()] = value.strip()
    return parsed


class SendApprovalRequest(Operation):
    name = "approval"
    description = "Email an approval request with approve/reject reply links"
    report_name = "approval_requests"
    arguments = [
        arg("--sender", required=True, help="Mailbox that sends the request (and receives replies)"),
        arg("--approver", dest="approvers", action="append", required=True,
            help="Approver address; repeatable"),
        arg("--title", required=True, help="What is being requested"),
        arg("--requester", default="", help="Person the request is made for"),
        arg("--detail", dest="details", action="append", default=[], metavar="KEY=VALUE",
            help="Request detail line; repeatable"),
        arg("--reference", default="", help="Ticket or request id used in reply subjects"),
    ]

    async def run(
        self,
        result: OperationResult,
        sender: str = "",
        approvers: Optional[list[str]] = None,
        title: str = "",
        requester: str = "",
        details: Any = None,
        reference: str = "",
    ):
        if not title:
            raise OperationError("An approval request needs a --title.")
        approvers = [a for a in (approvers or []) if a]
        tag = f"[{reference}] " if reference else ""
        subject = f"{tag}Approval required: {title}"
        detail_map = parse_details(details)

        html_body = render_template(
            "approval_email.html.j2",
            title=title,
            requester=requester,
            details=detail_map,
            reference=reference,
            approve_link=mailto_link(sender, f"APPROVED: {tag}{title}"),
            reject_link=mailto_link(sender, f"REJECTED: {tag}{title}",
                                    "Reason for rejection:\n"),
        )
        payload = build_message(subject, html_body, approvers, reply_to=sender, importance="high")
        response = await send_mail(self.graph, sender, payload)

        for approver in approvers:
            result.add_row({
                "approver": approver,
                "subject": subject,
                "sender": sender,
                "status": "planned" if response.get("_dry_run") else "sent",
            })

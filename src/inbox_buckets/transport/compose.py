"""MIME construction for drafts appended to the remote drafts folder."""

from __future__ import annotations

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid

from ..core.models import DraftRecord

LOGGER = logging.getLogger(__name__)


def build_draft_message(draft: DraftRecord, sender: str | None) -> MIMEMultipart:
    """Build the MIME representation of ``draft``.

    A Message-ID is generated when the draft does not carry one yet, and is
    written back onto ``draft`` so later replacements keep the same identity.
    """
    mime_msg = MIMEMultipart("alternative")
    if sender:
        mime_msg["From"] = sender
    if draft.to:
        mime_msg["To"] = ", ".join(draft.to)
    if draft.cc:
        mime_msg["Cc"] = ", ".join(draft.cc)
    if draft.bcc:
        mime_msg["Bcc"] = ", ".join(draft.bcc)
    mime_msg["Subject"] = draft.subject
    mime_msg["Date"] = formatdate(localtime=False)

    if not draft.message_id:
        draft.message_id = make_msgid(domain=_domain_of(sender))
    mime_msg["Message-ID"] = draft.message_id

    # Thread headers keep the draft attached to its conversation
    if draft.in_reply_to:
        mime_msg["In-Reply-To"] = draft.in_reply_to
    if draft.references:
        mime_msg["References"] = " ".join(draft.references)

    mime_msg.attach(MIMEText(draft.body_text, "plain", "utf-8"))
    LOGGER.debug(
        "Built draft MIME message: To=%s, Subject=%s (%d chars)",
        ", ".join(draft.to),
        draft.subject,
        len(draft.body_text),
    )
    return mime_msg


def _domain_of(address: str | None) -> str | None:
    if not address or "@" not in address:
        return None
    return address.rsplit("@", 1)[1].strip(" >") or None


__all__ = ["build_draft_message"]

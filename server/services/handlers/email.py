"""Mail node handler - emailSend."""

from typing import Dict, Any, TYPE_CHECKING

from services.errors import HandlerError
from services.execution.models import ExecutionContext

if TYPE_CHECKING:
    from services.mailer import Mailer


async def handle_email_send(fields: Dict[str, Any], context: ExecutionContext,
                            mailer: "Mailer") -> Dict[str, Any]:
    """Send an email with the resolved to/subject/body.

    Parameters:
        to: Recipient address
        subject: Subject line
        body: Plain-text body
        from: Optional sender, defaults to MAIL_FROM
    """
    to = fields.get("to")
    subject = fields.get("subject")
    body = fields.get("body")

    if not to or not isinstance(to, str):
        raise HandlerError("Email recipient (to) is required and must be a valid string")
    if not subject or not isinstance(subject, str):
        raise HandlerError("Email subject is required and must be a valid string")
    if body is None or body == "":
        raise HandlerError("Email body is required")

    return await mailer.send(to, subject, str(body), sender=fields.get("from"))

"""Email notifications: payout statements for merchants, invoices for buyers."""
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formataddr
import logging
import smtplib

from .config import Settings, utcnow
from .errors import ConfigurationError


logger = logging.getLogger(__name__)


class EmailSender(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, html: str) -> None:
        pass


class ConsoleEmailSender(EmailSender):
    """Logs emails instead of delivering them; used in development and tests."""

    def __init__(self) -> None:
        self.sent = []

    def send(self, to: str, subject: str, html: str) -> None:
        self.sent.append({"to": to, "subject": subject, "html": html})
        logger.info("[EMAIL] to=%s subject=%s", to, subject)


class SmtpEmailSender(EmailSender):
    def __init__(self, settings: Settings) -> None:
        missing = [
            name
            for name, value in (
                ("SMTP_HOST", settings.smtp_host),
                ("SMTP_USER", settings.smtp_user),
                ("SMTP_PASS", settings.smtp_pass),
                ("SMTP_FROM", settings.smtp_from),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Server is not configured for sending emails. Missing: {', '.join(missing)}"
            )
        self.settings = settings

    def send(self, to: str, subject: str, html: str) -> None:
        message = EmailMessage()
        message["From"] = formataddr((self.settings.smtp_from_name, self.settings.smtp_from))
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")

        if self.settings.smtp_port == 465:
            server = smtplib.SMTP_SSL(self.settings.smtp_host, self.settings.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30)
        with server:
            if self.settings.smtp_port != 465:
                server.starttls()
            server.login(self.settings.smtp_user, self.settings.smtp_pass)
            server.send_message(message)
        logger.info("Email sent to %s: %s", to, subject)


def create_email_sender(settings: Settings) -> EmailSender:
    mode = settings.email_mode.lower()
    if mode == "console":
        return ConsoleEmailSender()
    if mode == "smtp":
        return SmtpEmailSender(settings)
    raise ConfigurationError(f"Unknown EMAIL_MODE: {settings.email_mode}")


_CELL = "border: 1px solid #ddd; padding: 8px;"


def payout_statement(
    settings: Settings,
    company_name: str,
    request_id: str,
    amount: float,
    commission: float,
    net_payout: float,
) -> tuple:
    subject = f"Your {settings.app_name} Payout is Complete!"
    rate_percent = f"{settings.commission_rate * 100:.0f}"
    html = f"""
      <div style="font-family: Arial, sans-serif; line-height: 1.6;">
        <h2>Payout Statement</h2>
        <p>Hello {company_name},</p>
        <p>Your recent cashout request has been successfully processed. The funds have been settled.</p>
        <hr>
        <h3>Payout Details</h3>
        <p><strong>Request ID:</strong> {request_id}</p>
        <p><strong>Date:</strong> {utcnow():%Y-%m-%d}</p>
        <table style="width: 100%; border-collapse: collapse;">
          <tbody>
            <tr>
              <td style="{_CELL}">Gross Token Cashout ({settings.token_symbol})</td>
              <td style="{_CELL} text-align: right;">{amount:.2f}</td>
            </tr>
            <tr>
              <td style="{_CELL}">Platform Commission ({rate_percent}%)</td>
              <td style="{_CELL} text-align: right;">-{commission:.2f} {settings.fiat_symbol}</td>
            </tr>
          </tbody>
          <tfoot>
            <tr>
              <td style="{_CELL} text-align: right;"><strong>Net Payout:</strong></td>
              <td style="{_CELL} text-align: right;"><strong>{net_payout:.2f} {settings.fiat_symbol}</strong></td>
            </tr>
          </tfoot>
        </table>
        <p>The {settings.app_name} Team</p>
      </div>
    """
    return subject, html


def purchase_invoice(settings: Settings, customer_name: str, request_id: str, amount: float) -> tuple:
    subject = f"Your {settings.app_name} Purchase is Complete!"
    html = f"""
      <div style="font-family: Arial, sans-serif; line-height: 1.6;">
        <h2>Purchase Invoice</h2>
        <p>Hello {customer_name or 'Valued Customer'},</p>
        <p>Your purchase of <strong>{settings.token_name}</strong> tokens has been processed and credited to your wallet.</p>
        <hr>
        <p><strong>Order ID:</strong> {request_id}</p>
        <p><strong>Date:</strong> {utcnow():%Y-%m-%d}</p>
        <table style="width: 100%; border-collapse: collapse;">
          <tbody>
            <tr>
              <td style="{_CELL}">{settings.token_name} ({settings.token_symbol})</td>
              <td style="{_CELL}">{amount:.2f}</td>
            </tr>
          </tbody>
          <tfoot>
            <tr>
              <td style="{_CELL} text-align: right;"><strong>Total Paid:</strong></td>
              <td style="{_CELL}"><strong>{amount:.2f} {settings.fiat_symbol}</strong></td>
            </tr>
          </tfoot>
        </table>
        <p>The {settings.app_name} Team</p>
      </div>
    """
    return subject, html

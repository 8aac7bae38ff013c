"""
Email notification utilities for AD Roster Sync.

Sends operator notifications for failed runs, per-person errors and
run summaries. Sending is best-effort: failures are logged, never raised.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

PRODUCT_NAME = "AD Roster Sync"
MAX_LISTED_ERRORS = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        with server:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"{PRODUCT_NAME} Alert: {title}"

    body_lines = [
        f"{PRODUCT_NAME} Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "No accounts were changed after this failure.",
        "Please check the application logs for more detailed information.",
        "",
        f"This is an automated message from {PRODUCT_NAME}."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def send_person_errors_notification(
    errors: List[str],
    config: Dict[str, Any],
    aborted: bool = False
) -> bool:
    """
    Send notification listing people whose accounts could not be processed.

    Args:
        errors: One message per failed person
        config: Notification configuration
        aborted: True when the run stopped early after too many errors

    Returns:
        True if notification sent successfully
    """
    if not errors or not config.get('email_on_failure', True):
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"{PRODUCT_NAME} Alert: {len(errors)} account(s) not synchronized"

    body_lines = [
        f"{PRODUCT_NAME} Account Error Report",
        f"Timestamp: {timestamp}",
        "",
        f"Error Count: {len(errors)}",
        "",
        "Error Details:"
    ]
    for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1):
        body_lines.append(f"  {i}. {error}")
    if len(errors) > MAX_LISTED_ERRORS:
        body_lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")

    body_lines.append("")
    if aborted:
        body_lines.append("The run stopped early because the error limit was reached.")
    else:
        body_lines.append("All other accounts were processed.")
    body_lines.extend([
        "",
        f"This is an automated message from {PRODUCT_NAME}."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a completed run.

    Args:
        sync_stats: Dictionary containing sync statistics
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"{PRODUCT_NAME}: Successful Completion"

    body_lines = [
        f"{PRODUCT_NAME} Summary Report",
        f"Timestamp: {timestamp}",
        "",
        f"  Total runtime: {format_runtime(sync_stats.get('runtime_seconds', 0))}",
        f"  Roster records: {sync_stats.get('roster_records', 0)}",
        f"  Directory accounts: {sync_stats.get('directory_accounts', 0)}",
        f"  OUs created: {sync_stats.get('ous_created', 0)}",
        f"  Accounts created: {sync_stats.get('accounts_created', 0)}",
        f"  Accounts updated: {sync_stats.get('accounts_updated', 0)}",
        f"  Accounts disabled: {sync_stats.get('accounts_disabled', 0)}",
        f"  Errors: {sync_stats.get('total_errors', 0)}",
        "",
        f"This is an automated message from {PRODUCT_NAME}."
    ]

    return send_email(subject, '\n'.join(body_lines), config)


def send_directory_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """Send notification that the directory could not be reached."""
    additional_info = {
        'Component': 'Directory Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync aborted before any account was processed'
    }
    return send_failure_notification("Directory Connection Failed", error_message, config, additional_info)


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    body = '\n'.join([
        f"This is a test email from {PRODUCT_NAME}.",
        "",
        "Test details:",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(recipients)}",
    ])

    result = send_email(f"{PRODUCT_NAME}: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result

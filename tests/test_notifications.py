#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ad_roster_sync.notifications import (
    format_runtime,
    send_directory_connection_failure,
    send_email,
    send_failure_notification,
    send_person_errors_notification,
    send_success_summary,
    send_test_notification,
)


@patch('ad_roster_sync.notifications.smtplib.SMTP')
class TestSendEmail(unittest.TestCase):
    """Test cases for SMTP delivery."""

    def setUp(self):
        self.config = {
            'enable_email': True,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'password123',
            'email_from': 'alerts@example.com',
            'email_to': ['admin1@example.com', 'admin2@example.com'],
        }

    def sent_message(self, mock_smtp):
        args, _ = mock_smtp.return_value.sendmail.call_args
        return args[2]

    def test_send_with_starttls_and_login(self, mock_smtp):
        self.assertTrue(send_email('Subject', 'Body text', self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server = mock_smtp.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'password123')
        args, _ = server.sendmail.call_args
        self.assertEqual(args[0], 'alerts@example.com')
        self.assertEqual(args[1], ['admin1@example.com', 'admin2@example.com'])
        self.assertIn('Subject: Subject', args[2])

    def test_single_recipient_string(self, mock_smtp):
        self.config['email_to'] = 'admin@example.com'
        self.assertTrue(send_email('Subject', 'Body', self.config))
        args, _ = mock_smtp.return_value.sendmail.call_args
        self.assertEqual(args[1], ['admin@example.com'])

    def test_ssl_port_uses_smtp_ssl(self, mock_smtp):
        self.config['smtp_port'] = 465
        with patch('ad_roster_sync.notifications.smtplib.SMTP_SSL') as mock_ssl:
            self.assertTrue(send_email('Subject', 'Body', self.config))
            mock_ssl.assert_called_once_with('smtp.example.com', 465)
        mock_smtp.assert_not_called()

    def test_disabled(self, mock_smtp):
        self.config['enable_email'] = False
        self.assertFalse(send_email('Subject', 'Body', self.config))
        mock_smtp.assert_not_called()

    def test_missing_server_or_recipients(self, mock_smtp):
        self.assertFalse(send_email('Subject', 'Body', dict(self.config, smtp_server=None)))
        self.assertFalse(send_email('Subject', 'Body', dict(self.config, email_to=[])))
        mock_smtp.assert_not_called()

    def test_smtp_failure_returns_false(self, mock_smtp):
        mock_smtp.side_effect = smtplib.SMTPConnectError(421, 'Service not available')
        self.assertFalse(send_email('Subject', 'Body', self.config))

        mock_smtp.side_effect = OSError('Connection refused')
        self.assertFalse(send_email('Subject', 'Body', self.config))

    def test_failure_notification(self, mock_smtp):
        self.assertTrue(send_failure_notification('Roster Read Failed', 'missing column(s): Team', self.config))
        message = self.sent_message(mock_smtp)
        self.assertIn('AD Roster Sync Alert: Roster Read Failed', message)
        self.assertIn('missing column(s): Team', message)

    def test_failure_notification_disabled(self, mock_smtp):
        self.config['email_on_failure'] = False
        self.assertFalse(send_failure_notification('Sync Failed', 'boom', self.config))
        mock_smtp.assert_not_called()

    def test_person_errors_are_truncated(self, mock_smtp):
        errors = [f"create {n}: Organizational unit 'Lab' does not exist" for n in range(12)]

        self.assertTrue(send_person_errors_notification(errors, self.config))

        message = self.sent_message(mock_smtp)
        self.assertIn('12 account(s) not synchronized', message)
        self.assertIn('... and 2 more errors', message)
        self.assertIn('All other accounts were processed.', message)

    def test_person_errors_aborted_run(self, mock_smtp):
        send_person_errors_notification(['update 7: unwillingToPerform'], self.config, aborted=True)
        self.assertIn('error limit was reached', self.sent_message(mock_smtp))

    def test_no_person_errors_sends_nothing(self, mock_smtp):
        self.assertFalse(send_person_errors_notification([], self.config))
        mock_smtp.assert_not_called()

    def test_success_summary(self, mock_smtp):
        stats = {'runtime_seconds': 75, 'roster_records': 10, 'accounts_created': 2,
                 'accounts_updated': 7, 'accounts_disabled': 1}

        self.assertFalse(send_success_summary(stats, self.config))
        mock_smtp.assert_not_called()

        self.config['email_on_success'] = True
        self.assertTrue(send_success_summary(stats, self.config))
        message = self.sent_message(mock_smtp)
        self.assertIn('Accounts created: 2', message)
        self.assertIn('Total runtime: 1m 15.0s', message)

    def test_directory_connection_failure(self, mock_smtp):
        self.assertTrue(send_directory_connection_failure('Failed to connect', self.config, retry_count=3))
        message = self.sent_message(mock_smtp)
        self.assertIn('Directory Connection Failed', message)
        self.assertIn('Retry Attempts: 3', message)

    def test_test_notification(self, mock_smtp):
        self.assertTrue(send_test_notification(self.config))
        self.assertIn('Configuration Test', self.sent_message(mock_smtp))


class TestFormatRuntime(unittest.TestCase):

    def test_seconds_and_minutes(self):
        self.assertEqual(format_runtime(12.5), '12.50 seconds')
        self.assertEqual(format_runtime(125), '2m 5.0s')


if __name__ == '__main__':
    unittest.main()

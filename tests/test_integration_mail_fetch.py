#!/usr/bin/env python3
"""
Integration tests for the Mail Fetch run

Drives main() end to end with a fake Graph client: authentication, message
and attachment paging, output files and exit codes.
"""

import glob
import io
import json
import os
import shutil
import sys
import tempfile
import unittest
from contextlib import redirect_stderr
from unittest.mock import Mock, patch

import structlog

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from fetch_errors import AuthenticationError, PageFetchError
from graph_oauth import AuthContext
from mail_fetch import EXIT_OK, EXIT_RUNTIME, MailCollector, RunConfig, main
from output_writer import ResultWriter
from paginator import Page, PageFetcher


class FakeGraphClient(PageFetcher):
    """
    In-memory stand-in for GraphClient.

    Serves message pages of the given sizes and, per message, one attachment
    page of the given size. A cursor listed in fail_on raises PageFetchError.
    """

    def __init__(self, page_sizes=(2, 2, 2), attachments_per_message=2, fail_on=None):
        self.fail_on = fail_on
        self.fetched_cursors = []
        self.attachment_requests = []
        self.pages = {}
        self.attachments_per_message = attachments_per_message

        counter = 0
        for index, size in enumerate(page_sizes):
            items = [{"id": f"m{counter + i}", "subject": f"Message {counter + i}"} for i in range(size)]
            counter += size
            cursor = f"https://graph.microsoft.com/v1.0/messages?page={index + 1}" if index + 1 < len(page_sizes) else None
            self.pages[index] = Page(items=items, next_cursor=cursor)

    def list_messages(self, username):
        return self.pages[0]

    def list_attachments(self, username, message_id):
        self.attachment_requests.append(message_id)
        items = [{"id": f"{message_id}-a{i}", "name": f"file{i}.txt"} for i in range(self.attachments_per_message)]
        return Page(items=items)

    def fetch_next(self, cursor):
        self.fetched_cursors.append(cursor)
        if cursor == self.fail_on:
            raise PageFetchError("Graph API error: 503 - Service Unavailable", status_code=503, url=cursor)
        index = int(cursor.rsplit("=", 1)[1])
        return self.pages[index]


class TestMainEndToEnd(unittest.TestCase):
    """Test cases for full runs through main()"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.stderr = io.StringIO()

        self.authenticator = Mock()
        self.authenticator.acquire_context.return_value = AuthContext(access_token="token-123", scope="scope")

        patchers = [
            patch('mail_fetch.load_dotenv'),
            patch('mail_fetch.MsalAuthenticator', return_value=self.authenticator),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self):
        structlog.reset_defaults()
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    def _run(self, client, *flags):
        argv = [
            "--app-id", "app-id",
            "--organization-id", "tenant-id",
            "--client-secret", "s3cr3t",
            "--username", "alice@contoso.com",
            "--output", self.test_dir,
            *flags,
        ]
        with patch('mail_fetch.GraphClient', return_value=client), redirect_stderr(self.stderr):
            return main(argv)

    def _results(self):
        files = glob.glob(os.path.join(self.test_dir, "results", "results_*.json"))
        self.assertEqual(len(files), 1)
        with open(files[0], "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f]

    def _log_text(self):
        files = glob.glob(os.path.join(self.test_dir, "logs", "mail-fetch_*.log"))
        self.assertEqual(len(files), 1)
        with open(files[0], "r", encoding="utf-8") as f:
            return f.read()

    def test_first_result_only_without_attachments(self):
        """Test that the default run writes exactly one line with no attachments"""
        client = FakeGraphClient(page_sizes=(2, 2, 2))

        exit_code = self._run(client)

        self.assertEqual(exit_code, EXIT_OK)
        lines = self._results()
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0]["Message"]["id"], "m0")
        self.assertEqual(lines[0]["Attachments"], [])
        self.assertEqual(client.fetched_cursors, [])
        self.assertEqual(client.attachment_requests, [])
        self.authenticator.acquire_context.assert_called_once_with("app-id", "tenant-id", "s3cr3t")

    def test_all_results_with_attachments(self):
        """Test that --all-results with attachments writes every message with both attachments"""
        client = FakeGraphClient(page_sizes=(2, 2, 2), attachments_per_message=2)

        exit_code = self._run(client, "--all-results", "--include-attachments")

        self.assertEqual(exit_code, EXIT_OK)
        lines = self._results()
        self.assertEqual([line["Message"]["id"] for line in lines], ["m0", "m1", "m2", "m3", "m4", "m5"])
        for line in lines:
            self.assertEqual(len(line["Attachments"]), 2)
            self.assertTrue(all(a["id"].startswith(line["Message"]["id"]) for a in line["Attachments"]))
        self.assertEqual(len(client.fetched_cursors), 2)

    def test_attachments_first_result_only(self):
        """Test that without --all-results each message keeps only its first attachment"""
        client = FakeGraphClient(page_sizes=(2,), attachments_per_message=2)

        self._run(client, "--include-attachments")

        lines = self._results()
        self.assertEqual(len(lines), 1)
        self.assertEqual([a["id"] for a in lines[0]["Attachments"]], ["m0-a0"])

    def test_fetch_failure_keeps_written_lines(self):
        """Test that a failure on page 2 leaves page 1 on disk and exits with the runtime code"""
        client = FakeGraphClient(page_sizes=(2, 2, 2))
        client.fail_on = client.pages[0].next_cursor

        exit_code = self._run(client, "--all-results")

        self.assertEqual(exit_code, EXIT_RUNTIME)
        lines = self._results()
        self.assertEqual([line["Message"]["id"] for line in lines], ["m0", "m1"])
        self.assertIn("PageFetchError", self.stderr.getvalue())
        log_text = self._log_text()
        self.assertIn("Critical Error", log_text)
        self.assertIn("Traceback", log_text)

    def test_authentication_failure(self):
        """Test that a rejected credential exits with the runtime code before any fetch"""
        self.authenticator.acquire_context.side_effect = AuthenticationError("invalid_client")
        client = FakeGraphClient()

        exit_code = self._run(client)

        self.assertEqual(exit_code, EXIT_RUNTIME)
        self.assertIn("AuthenticationError: invalid_client", self.stderr.getvalue())
        self.assertFalse(os.path.exists(os.path.join(self.test_dir, "results")))
        self.assertIn("invalid_client", self._log_text())

    def test_log_file_written(self):
        """Test that a successful run leaves a log with the start and target user"""
        self._run(FakeGraphClient())

        log_text = self._log_text()
        self.assertIn("MailFetch started", log_text)
        self.assertIn("Reading mail for alice@contoso.com", log_text)


class TestMailCollector(unittest.TestCase):
    """Test cases for MailCollector without the CLI"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    def test_record_written_before_next_message(self):
        """Test that each record is written before the next message's attachments are fetched"""
        client = FakeGraphClient(page_sizes=(3,), attachments_per_message=1)
        config = RunConfig(
            app_id="app", organization_id="tenant", client_secret="secret",
            username="alice@contoso.com", output_dir=self.test_dir,
            include_attachments=True, fetch_all_pages=True,
        )
        writer = Mock(spec=ResultWriter)
        events = []
        writer.write_line.side_effect = lambda record: events.append(("write", record.message["id"]))
        original = client.list_attachments

        def list_attachments(username, message_id):
            events.append(("attachments", message_id))
            return original(username, message_id)

        client.list_attachments = list_attachments

        count = MailCollector(config, client, writer).collect()

        self.assertEqual(count, 3)
        self.assertEqual(events, [
            ("attachments", "m0"), ("write", "m0"),
            ("attachments", "m1"), ("write", "m1"),
            ("attachments", "m2"), ("write", "m2"),
        ])


if __name__ == '__main__':
    unittest.main()

#!/usr/bin/env python3
"""
Mail Fetch Script

Demonstrates that a single application credential (client ID + client secret)
is enough to read the mail of any user in an organization through Microsoft
Graph, without a per-user login. Authenticates once with the OAuth2
client-credentials flow, reads a user's messages (optionally every page,
optionally with attachments) and writes them as line-delimited JSON under the
output directory.
"""

import argparse
import datetime
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from dotenv import load_dotenv

from fetch_errors import ConfigurationError
from graph_oauth import Authenticator, GraphClient, MsalAuthenticator
from log_config import LogConfig
from output_writer import OutputRecord, ResultWriter
from paginator import for_each, to_list

__version__ = "1.0.0"

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_RUNTIME = 2

# Environment fallbacks for the required flags, also read from a .env file
ENV_FALLBACKS = {
    "app_id": "MAILFETCH_APP_ID",
    "organization_id": "MAILFETCH_ORGANIZATION_ID",
    "client_secret": "MAILFETCH_CLIENT_SECRET",
    "username": "MAILFETCH_USERNAME",
    "output": "MAILFETCH_OUTPUT",
}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class RunConfig:
    """Validated command-line input for one run"""
    app_id: str
    organization_id: str
    client_secret: str
    username: str
    output_dir: str
    include_attachments: bool = False
    fetch_all_pages: bool = False
    started_at: datetime.datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        missing = [
            name for name in ("app_id", "organization_id", "client_secret", "username", "output_dir")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ConfigurationError(f"Missing required values: {', '.join(missing)}")

        # Relative output directories are taken from the current working directory
        resolved = os.path.abspath(os.path.join(os.getcwd(), os.path.expanduser(self.output_dir)))
        object.__setattr__(self, "output_dir", resolved)

    @property
    def timestamp(self) -> str:
        """Run start time used in file names, down to the microsecond"""
        return self.started_at.strftime("%Y%m%d%H%M%S%f")

    @property
    def log_file(self) -> str:
        return os.path.join(self.output_dir, "logs", f"mail-fetch_{self.timestamp}.log")

    @property
    def results_file(self) -> str:
        return os.path.join(self.output_dir, "results", f"results_{self.timestamp}.json")


class CLIArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ConfigurationError instead of exiting"""

    def error(self, message):
        raise ConfigurationError(message)


def build_parser() -> CLIArgumentParser:
    parser = CLIArgumentParser(
        prog="mail-fetch",
        description="Read a user's mail through Microsoft Graph with an application credential.",
        epilog="Required values may also be set through MAILFETCH_* environment variables or a .env file.",
    )
    parser.add_argument("--app-id", help="Application Id")
    parser.add_argument("--organization-id", help="Organization Id (Tenant Id)")
    parser.add_argument("--client-secret", help="Application Client Secret (password)")
    parser.add_argument("--username", help="User to collect email messages from")
    parser.add_argument("--output", help="Output Directory")
    parser.add_argument("--include-attachments", action="store_true", help="Download message attachments")
    parser.add_argument("--all-results", action="store_true", help="Retrieve all results, not just the first one")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> RunConfig:
    """
    Parse command-line arguments into a RunConfig.

    Args:
        argv: Arguments without the program name, defaults to sys.argv[1:]
        environ: Source of fallback values, defaults to os.environ

    Raises:
        ConfigurationError: If a required value is missing or an argument is invalid
    """
    environ = os.environ if environ is None else environ
    args = build_parser().parse_args(argv)

    values = {}
    missing = []
    for name, env_var in ENV_FALLBACKS.items():
        value = getattr(args, name) or environ.get(env_var, "")
        if not value.strip():
            missing.append(f"--{name.replace('_', '-')}")
        values[name] = value.strip()

    if missing:
        raise ConfigurationError(f"the following arguments are required: {', '.join(missing)}")

    return RunConfig(
        app_id=values["app_id"],
        organization_id=values["organization_id"],
        client_secret=values["client_secret"],
        username=values["username"],
        output_dir=values["output"],
        include_attachments=args.include_attachments,
        fetch_all_pages=args.all_results,
    )


class MailCollector:
    """Reads a user's messages and hands one OutputRecord per message to the writer"""

    def __init__(self, config: RunConfig, client: GraphClient, writer: ResultWriter, logger=None):
        self.config = config
        self.client = client
        self.writer = writer
        self.logger = logger or structlog.get_logger(__name__)
        self.message_count = 0

    def collect(self) -> int:
        """
        Walk the user's messages and write each one as it is reached.

        Returns:
            int: Number of messages written
        """
        username = self.config.username
        with structlog.contextvars.bound_contextvars(collection=f"users/{username}/messages"):
            first_page = self.client.list_messages(username)
            for_each(first_page, self.client, self._process_message, self.config.fetch_all_pages)

        self.logger.info("Messages collected", username=username, messages=self.message_count)
        return self.message_count

    def _process_message(self, message: Dict[str, Any]) -> None:
        message_id = message.get("id", "")
        with structlog.contextvars.bound_contextvars(result=message_id):
            attachments: List[Dict[str, Any]] = []
            if self.config.include_attachments:
                attachments = self._collect_attachments(message_id)

            self.writer.write_line(OutputRecord(message=message, attachments=attachments))
            self.message_count += 1
            self.logger.debug("Message written", attachments=len(attachments))

    def _collect_attachments(self, message_id: str) -> List[Dict[str, Any]]:
        username = self.config.username
        with structlog.contextvars.bound_contextvars(collection=f"users/{username}/messages/{message_id}/attachments"):
            first_page = self.client.list_attachments(username, message_id)
            return to_list(first_page, self.client, self.config.fetch_all_pages)


def run(config: RunConfig, authenticator: Optional[Authenticator] = None) -> int:
    """
    Run one fetch: logging, authentication, collection, output.

    Any failure is logged as critical with its traceback and re-raised.

    Returns:
        int: Number of messages written
    """
    with LogConfig(config.log_file) as log_config:
        logger = log_config.get_logger("mail_fetch")
        try:
            logger.info("MailFetch started", version=__version__)
            authenticator = authenticator or MsalAuthenticator(logger=log_config.get_logger("graph_oauth"))
            auth_context = authenticator.acquire_context(config.app_id, config.organization_id, config.client_secret)

            logger.info(f"Reading mail for {config.username}")
            client = GraphClient(auth_context, logger=log_config.get_logger("graph_oauth"))
            with ResultWriter(config.results_file, logger=log_config.get_logger("output_writer")) as writer:
                collector = MailCollector(config, client, writer, logger=logger)
                count = collector.collect()

            logger.info("Results written", path=config.results_file, messages=count)
            logger.debug("All done!")
            return count
        except Exception:
            logger.critical("Critical Error", exc_info=True)
            raise


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the Mail Fetch Script"""
    load_dotenv()

    try:
        config = parse_args(argv)
    except ConfigurationError as e:
        build_parser().print_usage(sys.stderr)
        print(f"mail-fetch: error: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        run(config)
    except Exception as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_RUNTIME

    return EXIT_OK


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()

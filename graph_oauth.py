#!/usr/bin/env python3
"""
Graph OAuth2 Client Module

Acquires an application token with the OAuth2 client-credentials flow and
reads mailbox collections from the Microsoft Graph API with it. No user
sign-in is involved: the application credential alone is enough to read any
mailbox the app registration has been granted Mail.Read on.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode, urlparse

import msal
import requests
import structlog

from fetch_errors import AuthenticationError, PageFetchError
from paginator import Page, PageFetcher


@dataclass(frozen=True)
class AuthContext:
    """Bearer credential for a single run"""
    access_token: str
    scope: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        """Headers that authenticate a Graph request"""
        return {"Authorization": f"{self.token_type} {self.access_token}"}


def mask_secret(secret: str) -> str:
    """Hide all but the first few characters of a secret for logging"""
    if not secret:
        return ""
    return secret[:3] + "*" * max(len(secret) - 3, 3)


class Authenticator:
    """Exchanges an application credential for an AuthContext"""

    def acquire_context(self, app_id: str, organization_id: str, client_secret: str) -> AuthContext:
        raise NotImplementedError


class MsalAuthenticator(Authenticator):
    """Client-credentials flow against the Microsoft identity platform"""

    AUTHORITY_TEMPLATE = "https://login.microsoftonline.com/{organization_id}"

    # Application permissions granted to the app registration
    SCOPE = "https://graph.microsoft.com/.default"

    def __init__(self, logger=None):
        self.logger = logger or structlog.get_logger(__name__)

    def acquire_context(self, app_id: str, organization_id: str, client_secret: str) -> AuthContext:
        """
        Request a Graph token as the application itself.

        Args:
            app_id: Azure app registration client ID
            organization_id: Tenant ID the app is registered in
            client_secret: Client secret of the app registration

        Returns:
            AuthContext: Token to attach to Graph requests

        Raises:
            AuthenticationError: If the token request is rejected or fails
        """
        self.logger.info("Using existing application credentials")
        self.logger.debug(
            "Creating confidential client",
            app_id=app_id,
            organization_id=organization_id,
            client_secret=mask_secret(client_secret),
        )

        try:
            app = msal.ConfidentialClientApplication(
                client_id=app_id,
                client_credential=client_secret,
                authority=self.AUTHORITY_TEMPLATE.format(organization_id=organization_id),
            )
            result = app.acquire_token_for_client(scopes=[self.SCOPE])
        except (ValueError, requests.RequestException) as e:
            raise AuthenticationError(f"Token request for app {app_id} failed: {e}") from e

        if not result or "access_token" not in result:
            result = result or {}
            error = result.get("error", "unknown_error")
            description = result.get("error_description", "No access token returned")
            raise AuthenticationError(f"Token request for app {app_id} was rejected: {error}: {description}")

        self.logger.debug("Access token acquired", expires_in=result.get("expires_in"))
        return AuthContext(
            access_token=result["access_token"],
            scope=self.SCOPE,
            token_type=result.get("token_type", "Bearer"),
            expires_in=result.get("expires_in"),
        )


class GraphClient(PageFetcher[Dict[str, Any]]):
    """Reads mailbox collections from Microsoft Graph as pages"""

    GRAPH_ENDPOINT = "https://graph.microsoft.com/v1.0"

    def __init__(self, auth_context: AuthContext, session: Optional[requests.Session] = None, logger=None):
        self.auth_context = auth_context
        self.session = session or requests.Session()
        self.session.headers.update(auth_context.headers())
        self.logger = logger or structlog.get_logger(__name__)

    def list_messages(self, username: str) -> Page[Dict[str, Any]]:
        """First page of the messages in a user's mailbox"""
        return self.get_page(f"/users/{quote(username, safe='@')}/messages")

    def list_attachments(self, username: str, message_id: str) -> Page[Dict[str, Any]]:
        """First page of the attachments of one message"""
        return self.get_page(
            f"/users/{quote(username, safe='@')}/messages/{quote(message_id, safe='')}/attachments"
        )

    def fetch_next(self, cursor: str) -> Page[Dict[str, Any]]:
        """
        Follow an @odata.nextLink.

        Cursors are full URLs and must stay on the Graph host.
        """
        parsed = urlparse(cursor)
        if parsed.scheme != "https" or parsed.netloc.lower() != urlparse(self.GRAPH_ENDPOINT).netloc:
            raise PageFetchError(f"Refusing to follow next link outside Microsoft Graph: {cursor}", url=cursor)
        return self._get(cursor)

    def get_page(self, endpoint: str, params: Optional[Dict[str, str]] = None) -> Page[Dict[str, Any]]:
        """GET a collection endpoint relative to the Graph root"""
        return self._get(f"{self.GRAPH_ENDPOINT}{endpoint}", params)

    def _get(self, url: str, params: Optional[Dict[str, str]] = None) -> Page[Dict[str, Any]]:
        query = f"?{urlencode(params)}" if params else ""
        self.logger.debug(f"GET {url}{query}")

        try:
            response = self.session.get(url, params=params)
        except requests.RequestException as e:
            raise PageFetchError(f"Graph API request error for {url}: {e}", url=url) from e

        if response.status_code != 200:
            raise PageFetchError(
                f"Graph API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
                url=url,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PageFetchError(f"Graph API returned invalid JSON for {url}", status_code=response.status_code, url=url) from e

        return Page(items=data.get("value", []), next_cursor=data.get("@odata.nextLink"))

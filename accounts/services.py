"""
Collaborators used by the sync pipeline: credential refresh and owner resolution.

Acquiring credentials (OAuth consent, code exchange) happens outside this
service; here we only refresh what is already stored for a connected mailbox.
"""
import logging
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from msal import ConfidentialClientApplication

from accounts.models import Account, OAuthToken, Provider
from mail.exceptions import AuthExpired, Transient

logger = logging.getLogger(__name__)

# Suppress the file_cache warning from oauth2client
warnings.filterwarnings('ignore', message='.*file_cache.*oauth2client.*', category=UserWarning)

for logger_name in ['google_auth_oauthlib', 'google.auth', 'googleapiclient', 'msal']:
    logging.getLogger(logger_name).setLevel(logging.WARNING)

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
]
MICROSOFT_MAIL_SCOPES = [
    "Mail.Read",
]

# Errors that mean the refresh token itself is dead; anything else is retryable
PERMANENT_REFRESH_ERRORS = ["invalid_grant", "invalid_token", "invalid_client", "unauthorized_client"]


@dataclass
class RefreshedToken:
    access_token: str
    expires_at: Optional[datetime]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return timezone.make_aware(value) if timezone.is_naive(value) else value


class TokenProvider:
    """Refreshes a mailbox credential once per AuthExpired signal."""

    def refresh(self, account_id: int) -> RefreshedToken:
        account = Account.objects.select_related("oauth_token").get(pk=account_id)
        try:
            oauth_token = account.oauth_token
        except OAuthToken.DoesNotExist:
            raise AuthExpired(f"Account {account} has no stored credential")

        if not oauth_token.refresh_token:
            raise AuthExpired(f"Account {account} has no refresh token")

        if account.provider == Provider.GMAIL:
            return self._refresh_gmail(account, oauth_token)
        if account.provider == Provider.MICROSOFT:
            return self._refresh_microsoft(account, oauth_token)
        raise AuthExpired(f"Provider {account.provider} does not support credential refresh")

    def _refresh_gmail(self, account: Account, oauth_token: OAuthToken) -> RefreshedToken:
        credentials = Credentials(
            token=oauth_token.access_token,
            refresh_token=oauth_token.refresh_token,
            token_uri="https://oauth2.googleapis.com/token",
            client_id=settings.GOOGLE_OAUTH_CLIENT_ID,
            client_secret=settings.GOOGLE_OAUTH_CLIENT_SECRET,
            scopes=oauth_token.get_scopes_list() or GMAIL_SCOPES,
        )
        try:
            credentials.refresh(Request())
        except Exception as e:
            self._raise_for_refresh_error(account, str(e))

        oauth_token.access_token = credentials.token
        if credentials.refresh_token:
            oauth_token.refresh_token = credentials.refresh_token
        oauth_token.expires_at = _aware(credentials.expiry)
        if credentials.scopes:
            oauth_token.set_scopes_list(list(credentials.scopes))
        oauth_token.save()
        logger.info("Refreshed Gmail token for account %s", account.pk)
        return RefreshedToken(access_token=oauth_token.access_token, expires_at=oauth_token.expires_at)

    def _refresh_microsoft(self, account: Account, oauth_token: OAuthToken) -> RefreshedToken:
        tenant = settings.MICROSOFT_OAUTH_TENANT_ID
        app = ConfidentialClientApplication(
            client_id=settings.MICROSOFT_OAUTH_CLIENT_ID,
            client_credential=settings.MICROSOFT_OAUTH_CLIENT_SECRET,
            authority=f"https://login.microsoftonline.com/{tenant}",
        )
        try:
            result = app.acquire_token_by_refresh_token(
                refresh_token=oauth_token.refresh_token,
                scopes=oauth_token.get_scopes_list() or MICROSOFT_MAIL_SCOPES,
            )
        except Exception as e:
            self._raise_for_refresh_error(account, str(e))

        if "error" in result:
            self._raise_for_refresh_error(
                account, f"{result.get('error')}: {result.get('error_description', '')}"
            )

        oauth_token.access_token = result.get("access_token")
        oauth_token.refresh_token = result.get("refresh_token", oauth_token.refresh_token)
        expires_in = result.get("expires_in")
        oauth_token.expires_at = timezone.now() + timedelta(seconds=expires_in) if expires_in else None
        if result.get("scope"):
            oauth_token.set_scopes_list(result["scope"].split())
        oauth_token.save()
        logger.info("Refreshed Microsoft token for account %s", account.pk)
        return RefreshedToken(access_token=oauth_token.access_token, expires_at=oauth_token.expires_at)

    @staticmethod
    def _raise_for_refresh_error(account: Account, error: str):
        lowered = error.lower()
        if any(keyword in lowered for keyword in PERMANENT_REFRESH_ERRORS):
            logger.warning("Refresh token invalid for account %s: %s", account.pk, error)
            raise AuthExpired(f"Refresh token rejected for {account}: {error}")
        logger.warning("Token refresh failed (non-fatal) for account %s: %s", account.pk, error)
        raise Transient(f"Token refresh failed for {account}: {error}")


class OwnerDirectory:
    """Resolves which user a mailbox's data belongs to."""

    def resolve_owner(self, account_id: int) -> Optional[int]:
        """Explicit owner wins; otherwise the only linked user; otherwise unresolved (None)."""
        account = Account.objects.filter(pk=account_id).only("id", "owner_id").first()
        if account is None:
            return None
        if account.owner_id:
            return account.owner_id
        user_ids = list(account.users.values_list("pk", flat=True)[:2])
        if len(user_ids) == 1:
            return user_ids[0]
        return None


def credentials_for(account: Account) -> Credentials:
    """
    Build google-auth credentials from the stored access token only. Without a
    refresh token or expiry the transport never refreshes on its own; refresh
    is driven by TokenProvider when the provider answers 401.
    """
    return Credentials(token=access_token_for(account), scopes=GMAIL_SCOPES)


def access_token_for(account: Account) -> str:
    # Read from the table, not the cached relation, so a refresh made mid-cycle is picked up
    token = (
        OAuthToken.objects.filter(account_id=account.pk)
        .values_list("access_token", flat=True)
        .first()
    )
    if not token:
        raise AuthExpired(f"Account {account} is not connected")
    return token

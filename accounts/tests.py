"""
Tests for mailbox accounts: polling floor, owner resolution, credential refresh
and the account API. Provider SDKs are mocked.
"""
from datetime import datetime
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from accounts.models import Account, OAuthToken, Provider
from accounts.serializers import AccountSerializer
from accounts.services import OwnerDirectory, TokenProvider, access_token_for
from accounts.validators import validate_polling_interval
from mail.exceptions import AuthExpired, Transient
from mail.models import MessageIndexEntry, SyncState

User = get_user_model()


@override_settings(EMAIL_SYNC_MIN_POLL_INTERVAL_SECONDS=60)
class PollingIntervalTests(TestCase):
    def test_validator_enforces_floor(self):
        validate_polling_interval(60)
        validate_polling_interval(900)
        with self.assertRaises(ValidationError) as ctx:
            validate_polling_interval(30)
        self.assertEqual(ctx.exception.code, "polling_interval_too_low")

    def test_model_validation(self):
        account = Account(provider=Provider.IMAP, email="box@example.com", polling_interval_seconds=10)
        with self.assertRaises(ValidationError) as ctx:
            account.full_clean()
        self.assertIn("polling_interval_seconds", ctx.exception.message_dict)

    def test_serializer_rejects_interval_below_floor(self):
        serializer = AccountSerializer(
            data={"provider": "imap", "email": "box@example.com", "polling_interval_seconds": 30}
        )
        self.assertFalse(serializer.is_valid())
        self.assertIn("polling_interval_seconds", serializer.errors)

        serializer = AccountSerializer(
            data={"provider": "imap", "email": "box@example.com", "polling_interval_seconds": 120}
        )
        self.assertTrue(serializer.is_valid(), serializer.errors)

    @override_settings(EMAIL_SYNC_DEFAULT_POLL_INTERVAL_SECONDS=600)
    def test_default_interval_from_settings(self):
        account = Account.objects.create(provider=Provider.IMAP, email="box@example.com")
        self.assertEqual(account.polling_interval_seconds, 600)


class OwnerDirectoryTests(TestCase):
    def setUp(self):
        self.alice = User.objects.create_user(username="alice", password="pw")
        self.bob = User.objects.create_user(username="bob", password="pw")
        self.account = Account.objects.create(provider=Provider.GMAIL, email="shared@example.com")
        self.directory = OwnerDirectory()

    def test_explicit_owner_wins(self):
        self.account.owner = self.bob
        self.account.save()
        self.account.users.add(self.alice)
        self.assertEqual(self.directory.resolve_owner(self.account.pk), self.bob.pk)

    def test_single_linked_user(self):
        self.account.users.add(self.alice)
        self.assertEqual(self.directory.resolve_owner(self.account.pk), self.alice.pk)

    def test_ambiguous_or_missing_owner_is_unresolved(self):
        self.assertIsNone(self.directory.resolve_owner(self.account.pk))
        self.account.users.add(self.alice, self.bob)
        self.assertIsNone(self.directory.resolve_owner(self.account.pk))
        self.assertIsNone(self.directory.resolve_owner(999999))


@override_settings(
    MICROSOFT_OAUTH_CLIENT_ID="client",
    MICROSOFT_OAUTH_CLIENT_SECRET="secret",
    MICROSOFT_OAUTH_TENANT_ID="common",
    GOOGLE_OAUTH_CLIENT_ID="gclient",
    GOOGLE_OAUTH_CLIENT_SECRET="gsecret",
)
class TokenProviderTests(TestCase):
    def setUp(self):
        self.provider = TokenProvider()

    def _account(self, provider, refresh_token="refresh-1"):
        account = Account.objects.create(provider=provider, email=f"{provider}@example.com", is_connected=True)
        OAuthToken.objects.create(account=account, access_token="old", refresh_token=refresh_token)
        return account

    def test_missing_credential(self):
        account = Account.objects.create(provider=Provider.GMAIL, email="none@example.com")
        with self.assertRaises(AuthExpired):
            self.provider.refresh(account.pk)
        with self.assertRaises(AuthExpired):
            access_token_for(account)

    def test_imap_cannot_refresh(self):
        account = self._account(Provider.IMAP)
        with self.assertRaises(AuthExpired):
            self.provider.refresh(account.pk)

    @mock.patch("accounts.services.ConfidentialClientApplication")
    def test_microsoft_refresh_stores_new_token(self, app_cls):
        app_cls.return_value.acquire_token_by_refresh_token.return_value = {
            "access_token": "new",
            "refresh_token": "refresh-2",
            "expires_in": 3600,
        }
        account = self._account(Provider.MICROSOFT)

        refreshed = self.provider.refresh(account.pk)

        self.assertEqual(refreshed.access_token, "new")
        token = OAuthToken.objects.get(account=account)
        self.assertEqual(token.refresh_token, "refresh-2")
        self.assertIsNotNone(token.expires_at)
        self.assertEqual(access_token_for(account), "new")

    @mock.patch("accounts.services.ConfidentialClientApplication")
    def test_microsoft_invalid_grant_is_auth_expired(self, app_cls):
        app_cls.return_value.acquire_token_by_refresh_token.return_value = {
            "error": "invalid_grant",
            "error_description": "AADSTS70008: refresh token expired",
        }
        account = self._account(Provider.MICROSOFT)
        with self.assertRaises(AuthExpired):
            self.provider.refresh(account.pk)
        self.assertEqual(OAuthToken.objects.get(account=account).access_token, "old")

    @mock.patch("accounts.services.ConfidentialClientApplication")
    def test_microsoft_outage_is_transient(self, app_cls):
        app_cls.return_value.acquire_token_by_refresh_token.return_value = {
            "error": "temporarily_unavailable",
        }
        account = self._account(Provider.MICROSOFT)
        with self.assertRaises(Transient):
            self.provider.refresh(account.pk)

    @mock.patch("accounts.services.Request")
    @mock.patch("accounts.services.Credentials")
    def test_gmail_refresh(self, credentials_cls, _request):
        credentials = credentials_cls.return_value
        credentials.token = "g-new"
        credentials.refresh_token = None
        credentials.expiry = datetime(2030, 1, 1, 12, 0)
        credentials.scopes = None
        account = self._account(Provider.GMAIL)

        self.provider.refresh(account.pk)

        credentials.refresh.assert_called_once()
        token = OAuthToken.objects.get(account=account)
        self.assertEqual(token.access_token, "g-new")
        self.assertEqual(token.refresh_token, "refresh-1")
        self.assertIsNotNone(token.expires_at)


@override_settings(EMAIL_SYNC_MIN_POLL_INTERVAL_SECONDS=60)
class AccountApiTests(TestCase):
    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user(username="alice", password="pw")
        self.other = User.objects.create_user(username="bob", password="pw")
        self.client = APIClient()
        self.client.force_authenticate(self.user)
        self.account = Account.objects.create(
            provider=Provider.IMAP, email="alice@example.com", owner=self.user, is_connected=True
        )
        Account.objects.create(provider=Provider.IMAP, email="bob@example.com", owner=self.other)

    def test_list_is_scoped_to_user(self):
        response = self.client.get("/api/accounts/")
        self.assertEqual(response.status_code, 200)
        emails = [row["email"] for row in response.data["results"]]
        self.assertEqual(emails, ["alice@example.com"])
        self.assertNotIn("connection_settings", response.data["results"][0])

    def test_create_links_user_and_enforces_floor(self):
        response = self.client.post(
            "/api/accounts/",
            {"provider": "imap", "email": "new@example.com", "polling_interval_seconds": 30},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.post(
            "/api/accounts/",
            {"provider": "imap", "email": "new@example.com", "polling_interval_seconds": 120},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        account = Account.objects.get(email="new@example.com")
        self.assertIn(self.user, account.users.all())

    def test_owner_is_read_only_for_non_staff(self):
        response = self.client.post(
            "/api/accounts/",
            {"provider": "imap", "email": "claim@example.com", "owner": self.other.pk},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertIsNone(Account.objects.get(email="claim@example.com").owner)

        response = self.client.patch(
            f"/api/accounts/{self.account.pk}/", {"owner": self.other.pk}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.account.refresh_from_db()
        self.assertEqual(self.account.owner, self.user)

    def test_staff_can_assign_owner(self):
        staff = User.objects.create_user(username="ops", password="pw", is_staff=True)
        self.client.force_authenticate(staff)
        response = self.client.post(
            "/api/accounts/",
            {"provider": "imap", "email": "shared@example.com", "owner": self.other.pk},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Account.objects.get(email="shared@example.com").owner, self.other)

    def test_sync_action_queues_task(self):
        with mock.patch("mail.tasks.sync_account_emails.delay") as delay:
            delay.return_value = mock.Mock(id="task-9")
            response = self.client.post(
                f"/api/accounts/{self.account.pk}/sync/", {"mode": "full"}, format="json"
            )
        self.assertEqual(response.status_code, 202)
        delay.assert_called_once_with(self.account.pk, "full")

    def test_sync_status_action(self):
        response = self.client.get(f"/api/accounts/{self.account.pk}/sync-status/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["state"], "idle")
        self.assertEqual(response.data["message_count"], 0)

    def test_delete_disconnects_mailbox(self):
        SyncState.objects.create(account=self.account)
        MessageIndexEntry.objects.create(
            account=self.account,
            owner=self.user,
            provider_message_id="m-1",
            folder="inbox",
            direction="inbound",
        )
        response = self.client.delete(f"/api/accounts/{self.account.pk}/")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["deleted"])
        self.assertFalse(Account.objects.filter(pk=self.account.pk).exists())
        self.assertEqual(MessageIndexEntry.objects.count(), 0)

    def test_other_users_account_is_hidden(self):
        bob_account = Account.objects.get(email="bob@example.com")
        response = self.client.get(f"/api/accounts/{bob_account.pk}/sync-status/")
        self.assertEqual(response.status_code, 404)

"""Tests for oauth_utils.py."""
import asyncio
import base64
import string
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import oauth_utils
from oauth_utils import (
    APPROVED_CLIENTS_COOKIE,
    CSRF_COOKIE,
    SESSION_BINDING_COOKIE,
    CSRFMismatch,
    IntegrityError,
    MemoryKV,
    NoBinding,
    OAuthError,
    OAuthStateStore,
    PendingAuthRequest,
    RedisKV,
    UnknownOrExpiredState,
    add_approved_client,
    bind_state_to_session,
    clear_session_binding,
    decode_pending_request,
    encode_pending_request,
    generate_csrf_protection,
    is_client_approved,
    read_bound_token,
    seal,
    unseal,
    validate_csrf_token,
    validate_oauth_state,
)

KEY = "test-cookie-key"


def _cookie(header: str) -> tuple[str, str]:
    """Split a Set-Cookie header into (name, value)."""
    pair = header.split(";", 1)[0]
    name, _, value = pair.partition("=")
    return name, value


def _pending(client_id="demo", **kwargs):
    data = {
        "client_id": client_id,
        "redirect_uri": "https://client.example.com/callback",
        "scopes": ["reflect"],
        "state": "client-state",
        "code_challenge": "challenge",
    }
    data.update(kwargs)
    return PendingAuthRequest(**data)


@pytest.fixture
def store():
    return OAuthStateStore(MemoryKV())


# ---------------------------------------------------------------------------
# Cookie cipher
# ---------------------------------------------------------------------------

class TestCookieCipher:
    def test_seal_unseal(self):
        sealed = seal("hello", KEY)
        assert sealed != "hello"
        assert unseal(sealed, KEY) == "hello"

    def test_wrong_key_fails(self):
        sealed = seal("hello", KEY)
        with pytest.raises(IntegrityError):
            unseal(sealed, "another-key")

    def test_truncated_fails(self):
        sealed = seal("hello", KEY)
        with pytest.raises(IntegrityError):
            unseal(sealed[:-10], KEY)

    def test_garbage_fails(self):
        for junk in ("", "not-a-token", "ééé", "a.b.c"):
            with pytest.raises(IntegrityError):
                unseal(junk, KEY)

    def test_every_flipped_byte_fails(self):
        sealed = seal("state-token-123", KEY)
        raw = base64.urlsafe_b64decode(sealed)
        for i in range(len(raw)):
            tampered = bytearray(raw)
            tampered[i] ^= 0x01
            with pytest.raises(IntegrityError):
                unseal(base64.urlsafe_b64encode(bytes(tampered)).decode(), KEY)

    def test_flipped_character_never_yields_other_value(self):
        sealed = seal("state-token-123", KEY)
        alphabet = string.ascii_letters + string.digits + "-_"
        for i, ch in enumerate(sealed):
            replacement = "A" if ch != "A" else "B"
            assert replacement in alphabet
            tampered = sealed[:i] + replacement + sealed[i + 1:]
            try:
                value = unseal(tampered, KEY)
            except IntegrityError:
                continue
            # Only unused base64 padding bits can change without detection.
            assert value == "state-token-123"

    def test_expired_token_fails_with_ttl(self):
        old = oauth_utils._fernet(KEY).encrypt_at_time(b"tok", int(time.time()) - 3600)
        assert unseal(old.decode(), KEY) == "tok"
        with pytest.raises(IntegrityError):
            unseal(old.decode(), KEY, ttl=600)

    def test_key_rotation(self):
        sealed_old = seal("v1", "old-key")
        assert unseal(sealed_old, "new-key,old-key") == "v1"
        sealed_new = seal("v2", "new-key,old-key")
        assert unseal(sealed_new, "new-key") == "v2"
        with pytest.raises(IntegrityError):
            unseal(sealed_new, "old-key")

    def test_integrity_error_is_oauth_error(self):
        assert issubclass(IntegrityError, OAuthError)


# ---------------------------------------------------------------------------
# CSRF guard
# ---------------------------------------------------------------------------

class TestCSRF:
    def test_generate(self):
        csrf = generate_csrf_protection()
        name, value = _cookie(csrf.set_cookie)
        assert name == CSRF_COOKIE
        assert value == csrf.token
        assert "HttpOnly" in csrf.set_cookie
        assert "Secure" in csrf.set_cookie
        assert "Max-Age=600" in csrf.set_cookie

    def test_tokens_are_unique(self):
        assert generate_csrf_protection().token != generate_csrf_protection().token

    def test_exact_match_passes(self):
        csrf = generate_csrf_protection()
        validate_csrf_token(csrf.token, {CSRF_COOKIE: csrf.token})

    def test_missing_cookie_fails(self):
        csrf = generate_csrf_protection()
        with pytest.raises(CSRFMismatch):
            validate_csrf_token(csrf.token, {})

    def test_missing_submission_fails(self):
        csrf = generate_csrf_protection()
        with pytest.raises(CSRFMismatch):
            validate_csrf_token("", {CSRF_COOKIE: csrf.token})
        with pytest.raises(CSRFMismatch):
            validate_csrf_token(None, {CSRF_COOKIE: csrf.token})

    def test_one_character_difference_fails(self):
        csrf = generate_csrf_protection()
        last = "x" if csrf.token[-1] != "x" else "y"
        with pytest.raises(CSRFMismatch):
            validate_csrf_token(csrf.token[:-1] + last, {CSRF_COOKIE: csrf.token})

    def test_mismatch_status(self):
        assert CSRFMismatch().status_code == 403


# ---------------------------------------------------------------------------
# Approved-client ledger
# ---------------------------------------------------------------------------

class TestApprovedClients:
    def test_unknown_without_cookie(self):
        assert not is_client_approved({}, "abc", KEY)

    def test_add_preserves_previous(self):
        _, first = _cookie(add_approved_client({}, "abc", KEY))
        _, second = _cookie(add_approved_client({APPROVED_CLIENTS_COOKIE: first}, "xyz", KEY))
        cookies = {APPROVED_CLIENTS_COOKIE: second}
        assert is_client_approved(cookies, "abc", KEY)
        assert is_client_approved(cookies, "xyz", KEY)
        assert not is_client_approved(cookies, "other", KEY)

    def test_cookie_is_sealed(self):
        header = add_approved_client({}, "abc", KEY)
        name, value = _cookie(header)
        assert name == APPROVED_CLIENTS_COOKIE
        assert "abc" not in value

    def test_corrupt_cookie_is_not_approved(self):
        _, value = _cookie(add_approved_client({}, "abc", KEY))
        corrupt = value[:20] + ("A" if value[20] != "A" else "B") + value[21:]
        assert not is_client_approved({APPROVED_CLIENTS_COOKIE: corrupt}, "abc", KEY)
        assert not is_client_approved({APPROVED_CLIENTS_COOKIE: "garbage"}, "abc", KEY)

    def test_foreign_key_is_not_approved(self):
        _, value = _cookie(add_approved_client({}, "abc", "someone-else"))
        assert not is_client_approved({APPROVED_CLIENTS_COOKIE: value}, "abc", KEY)

    def test_add_over_corrupt_cookie_starts_fresh(self):
        _, value = _cookie(add_approved_client({APPROVED_CLIENTS_COOKIE: "garbage"}, "abc", KEY))
        assert is_client_approved({APPROVED_CLIENTS_COOKIE: value}, "abc", KEY)

    def test_non_list_payload_is_empty(self):
        cookies = {APPROVED_CLIENTS_COOKIE: seal('{"abc": true}', KEY)}
        assert not is_client_approved(cookies, "abc", KEY)


# ---------------------------------------------------------------------------
# Pending request encoding
# ---------------------------------------------------------------------------

class TestPendingRequest:
    def test_encode_decode(self):
        pending = _pending(resource="https://mcp.example.com/mcp")
        assert decode_pending_request(encode_pending_request(pending)) == pending

    def test_decode_garbage(self):
        for junk in ("", "!!!", base64.urlsafe_b64encode(b"{}").decode(),
                     base64.urlsafe_b64encode(b"not json").decode()):
            with pytest.raises(OAuthError):
                decode_pending_request(junk)

    def test_frozen(self):
        pending = _pending()
        with pytest.raises(Exception):
            pending.client_id = "evil"


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

class TestStateStore:
    @pytest.mark.asyncio
    async def test_create_then_consume(self, store):
        pending = _pending()
        token = await store.create(pending)
        assert len(token) >= 43  # 32 random bytes, base64url
        assert await store.consume(token) == pending

    @pytest.mark.asyncio
    async def test_second_consume_fails(self, store):
        token = await store.create(_pending())
        await store.consume(token)
        with pytest.raises(UnknownOrExpiredState):
            await store.consume(token)

    @pytest.mark.asyncio
    async def test_unknown_token_fails(self, store):
        with pytest.raises(UnknownOrExpiredState):
            await store.consume("never-issued")
        with pytest.raises(UnknownOrExpiredState):
            await store.consume("")

    @pytest.mark.asyncio
    async def test_expired_behaves_as_unknown(self):
        store = OAuthStateStore(MemoryKV(), ttl=0)
        token = await store.create(_pending())
        with pytest.raises(UnknownOrExpiredState):
            await store.consume(token)

    @pytest.mark.asyncio
    async def test_tokens_unique(self, store):
        tokens = {await store.create(_pending()) for _ in range(20)}
        assert len(tokens) == 20

    @pytest.mark.asyncio
    async def test_concurrent_consume_single_winner(self, store):
        token = await store.create(_pending())
        results = await asyncio.gather(
            *[store.consume(token) for _ in range(10)],
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, PendingAuthRequest)]
        failures = [r for r in results if isinstance(r, UnknownOrExpiredState)]
        assert len(successes) == 1
        assert len(failures) == 9

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_unknown(self):
        kv = MemoryKV()
        store = OAuthStateStore(kv)
        await kv.put(oauth_utils.STATE_KEY_PREFIX + "tok", "{not json", 60)
        with pytest.raises(UnknownOrExpiredState):
            await store.consume("tok")

    @pytest.mark.asyncio
    async def test_collision_retries(self, monkeypatch):
        kv = MemoryKV()
        store = OAuthStateStore(kv)
        await kv.put(oauth_utils.STATE_KEY_PREFIX + "taken", "{}", 60)
        tokens = iter(["taken", "fresh"])
        monkeypatch.setattr(oauth_utils.secrets, "token_urlsafe", lambda n: next(tokens))
        assert await store.create(_pending()) == "fresh"


class TestMemoryKV:
    @pytest.mark.asyncio
    async def test_only_if_absent(self):
        kv = MemoryKV()
        assert await kv.put("k", "v1", 60, only_if_absent=True)
        assert not await kv.put("k", "v2", 60, only_if_absent=True)
        assert await kv.pop("k") == "v1"
        assert await kv.pop("k") is None

    @pytest.mark.asyncio
    async def test_expired_entries_purged(self):
        kv = MemoryKV()
        await kv.put("old", "v", 0)
        await kv.put("new", "v", 60)
        assert len(kv) == 1


class TestRedisKV:
    @pytest.mark.asyncio
    async def test_put_uses_set_ex_nx(self):
        client = AsyncMock()
        client.set.return_value = True
        kv = RedisKV(client)
        assert await kv.put("k", "v", 600, only_if_absent=True)
        client.set.assert_awaited_once_with("k", "v", ex=600, nx=True)

    @pytest.mark.asyncio
    async def test_put_collision(self):
        client = AsyncMock()
        client.set.return_value = None
        assert not await RedisKV(client).put("k", "v", 600, only_if_absent=True)

    @pytest.mark.asyncio
    async def test_pop_uses_getdel(self):
        client = AsyncMock()
        client.getdel.return_value = b"value"
        assert await RedisKV(client).pop("k") == "value"
        client.getdel.assert_awaited_once_with("k")

    @pytest.mark.asyncio
    async def test_store_over_redis(self):
        client = AsyncMock()
        client.set.return_value = True
        store = OAuthStateStore(RedisKV(client))
        pending = _pending()
        token = await store.create(pending)
        client.getdel.return_value = client.set.await_args.args[1]
        assert await store.consume(token) == pending
        client.getdel.return_value = None
        with pytest.raises(UnknownOrExpiredState):
            await store.consume(token)


# ---------------------------------------------------------------------------
# Session binder
# ---------------------------------------------------------------------------

class TestSessionBinder:
    def test_bind_and_read(self):
        header = bind_state_to_session("T1", KEY)
        name, value = _cookie(header)
        assert name == SESSION_BINDING_COOKIE
        assert "T1" not in value
        assert "HttpOnly" in header and "Secure" in header and "Path=/" in header
        assert read_bound_token({name: value}, KEY) == "T1"

    def test_missing_binding(self):
        with pytest.raises(NoBinding):
            read_bound_token({}, KEY)

    def test_tampered_binding(self):
        _, value = _cookie(bind_state_to_session("T1", KEY))
        with pytest.raises(NoBinding):
            read_bound_token({SESSION_BINDING_COOKIE: value[:-4] + "AAAA"}, KEY)

    def test_unsealed_binding_rejected(self):
        with pytest.raises(NoBinding):
            read_bound_token({SESSION_BINDING_COOKIE: "T1"}, KEY)

    def test_clear(self):
        header = clear_session_binding()
        name, value = _cookie(header)
        assert name == SESSION_BINDING_COOKIE
        assert value == ""
        assert "Max-Age=0" in header


# ---------------------------------------------------------------------------
# Callback validator
# ---------------------------------------------------------------------------

class TestValidateOAuthState:
    @pytest.mark.asyncio
    async def test_success(self, store):
        pending = _pending()
        token = await store.create(pending)
        name, value = _cookie(bind_state_to_session(token, KEY))

        result = await validate_oauth_state({name: value}, token, store, KEY)

        assert result.pending == pending
        assert result.clear_cookie == clear_session_binding()
        with pytest.raises(UnknownOrExpiredState):
            await store.consume(token)

    @pytest.mark.asyncio
    async def test_replay_fails(self, store):
        token = await store.create(_pending())
        cookies = dict([_cookie(bind_state_to_session(token, KEY))])
        await validate_oauth_state(cookies, token, store, KEY)
        with pytest.raises(OAuthError):
            await validate_oauth_state(cookies, token, store, KEY)

    @pytest.mark.asyncio
    async def test_missing_cookie(self, store):
        token = await store.create(_pending())
        with pytest.raises(OAuthError) as exc_info:
            await validate_oauth_state({}, token, store, KEY)
        assert ("set-cookie", clear_session_binding()) in exc_info.value.headers
        # The store entry is untouched by a browser-side failure.
        await store.consume(token)

    @pytest.mark.asyncio
    async def test_injected_state_rejected(self, store):
        attacker = await store.create(_pending(client_id="attacker"))
        victim = await store.create(_pending(client_id="victim"))
        cookies = dict([_cookie(bind_state_to_session(victim, KEY))])

        with pytest.raises(OAuthError):
            await validate_oauth_state(cookies, attacker, store, KEY)

        # Neither flow was consumed.
        assert (await store.consume(attacker)).client_id == "attacker"
        assert (await store.consume(victim)).client_id == "victim"

    @pytest.mark.asyncio
    async def test_missing_query_state(self, store):
        token = await store.create(_pending())
        cookies = dict([_cookie(bind_state_to_session(token, KEY))])
        with pytest.raises(OAuthError):
            await validate_oauth_state(cookies, None, store, KEY)

    @pytest.mark.asyncio
    async def test_bound_but_not_stored(self, store):
        cookies = dict([_cookie(bind_state_to_session("forged", KEY))])
        with pytest.raises(OAuthError) as exc_info:
            await validate_oauth_state(cookies, "forged", store, KEY)
        assert ("set-cookie", clear_session_binding()) in exc_info.value.headers

    @pytest.mark.asyncio
    async def test_failures_are_indistinguishable(self, store):
        token = await store.create(_pending())
        with pytest.raises(OAuthError) as no_cookie:
            await validate_oauth_state({}, token, store, KEY)
        cookies = dict([_cookie(bind_state_to_session("forged", KEY))])
        with pytest.raises(OAuthError) as no_state:
            await validate_oauth_state(cookies, "forged", store, KEY)

        for err in (no_cookie.value, no_state.value):
            assert type(err) is OAuthError
            assert err.status_code == 400
        assert no_cookie.value.description == no_state.value.description
        assert no_cookie.value.to_response().body == no_state.value.to_response().body

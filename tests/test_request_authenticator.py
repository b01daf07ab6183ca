import pytest

from conftest import make_user
from gatekeep.service.authenticator import AuthContext, extract_bearer
from gatekeep.service.errors import (
    AuthenticationError,
    MissingCredentialsError,
    PrincipalGoneError,
    TokenExpiredError,
    TokenRevokedError,
    WrongTokenTypeError,
)


class TestExtractBearer:
    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("Bearer abc") == "abc"
        assert extract_bearer("bearer abc") == "abc"
        assert extract_bearer("  BEARER   abc  ") == "abc"

    def test_rejects_other_schemes_and_blanks(self):
        assert extract_bearer(None) is None
        assert extract_bearer("") is None
        assert extract_bearer("Basic dXNlcjpwYXNz") is None
        assert extract_bearer("Bearer") is None
        assert extract_bearer("Bearer    ") is None


class TestAuthenticate:
    """The request authentication state machine."""

    async def test_valid_access_token(self, authenticator, authority, store):
        """A live access token yields the caller's identity."""
        user = make_user(store, role="admin", is_verified=True)
        token = await authority.issue_access_token(user.id, user.email)
        claims = authority.decode(token)

        ctx = await authenticator.authenticate(f"Bearer {token}")

        assert ctx == AuthContext(
            user_id=user.id,
            email="foo@bar.com",
            role="admin",
            jti=claims.jti,
            expires_at=claims.exp,
            is_verified=True,
        )

    async def test_current_record_overrides_claims(self, authenticator, authority, users, store):
        """Role and verification reflect the user record, not the token's claims."""
        user = make_user(store)
        token = await authority.issue_access_token(user.id, user.email)
        await authenticator.authenticate(f"Bearer {token}")

        await users.mark_verified(user.id)
        current = await users.find_by_id(user.id)
        current.role = store.get_role_by_name("admin")
        await users.update(current)

        claims = authority.decode(token)
        ctx = await authenticator.authenticate(f"Bearer {token}")
        assert (claims.role, claims.is_verified) == ("user", False)
        assert (ctx.role, ctx.is_verified) == ("admin", True)

    async def test_missing_header(self, authenticator):
        with pytest.raises(MissingCredentialsError):
            await authenticator.authenticate(None)
        with pytest.raises(MissingCredentialsError):
            await authenticator.authenticate("Token abc")

    async def test_refresh_token_rejected(self, authenticator, authority, store):
        """Refresh tokens cannot authenticate requests."""
        user = make_user(store)
        token = await authority.issue_refresh_token(user.id)

        with pytest.raises(WrongTokenTypeError):
            await authenticator.authenticate(f"Bearer {token}")

    async def test_deleted_principal(self, authenticator, authority, users, store):
        """A token outliving its user is rejected."""
        user = make_user(store)
        token = await authority.issue_access_token(user.id, user.email)
        await authenticator.authenticate(f"Bearer {token}")

        await users.delete(user.id)

        with pytest.raises(PrincipalGoneError):
            await authenticator.authenticate(f"Bearer {token}")

    async def test_blocked_token(self, authenticator, authority, store):
        user = make_user(store)
        token = await authority.issue_access_token(user.id, user.email)
        ctx = await authenticator.authenticate(f"Bearer {token}")

        await authority.block(ctx.jti, ctx.expires_at)

        with pytest.raises(TokenRevokedError):
            await authenticator.authenticate(f"Bearer {token}")

    async def test_expired_token(self, authenticator, authority, store, clock):
        user = make_user(store)
        token = await authority.issue_access_token(user.id, user.email)
        clock.advance(authority.access_token_ttl)

        with pytest.raises(TokenExpiredError):
            await authenticator.authenticate(f"Bearer {token}")

    async def test_principal_served_from_cache(self, authenticator, authority, directory, store):
        """Repeated requests do not reach the durable directory."""
        user = make_user(store)
        token = await authority.issue_access_token(user.id, user.email)
        baseline = directory.calls["get_user"]

        for _ in range(3):
            await authenticator.authenticate(f"Bearer {token}")

        assert directory.calls["get_user"] == baseline + 1

    async def test_every_rejection_is_401(self, authenticator, authority, store):
        user = make_user(store)
        refresh = await authority.issue_refresh_token(user.id)
        for header in [None, "Bearer junk", f"Bearer {refresh}"]:
            with pytest.raises(AuthenticationError) as excinfo:
                await authenticator.authenticate(header)
            assert excinfo.value.status_code == 401

"""Tests for TokenizedLinkService — issuance, link payloads and consumption."""

from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from app.exceptions import ProtectionError, TokenExpiredOrInvalid
from app.models.audit import AuditEvent
from app.models.verification_token import TokenPurpose, VerificationToken
from app.services.audit import DatabaseAuditTrail
from app.services.protection import ProtectionService
from app.services.verification import LinkPayload, TokenizedLinkService
from app.utils.crypto import sha256_hash
from app.utils.dates import as_utc

EMAIL = "student@example.edu"


def _payload(link_service: TokenizedLinkService, identifier: str, code: str, **kwargs) -> LinkPayload:
    return link_service.parse_link_payload(link_service.build_link_payload(identifier, code, **kwargs))


def _actions(audit) -> list[str]:
    return [c.args[0] for c in audit.record.call_args_list]


class TestIssueVerification:
    def test_stores_no_plaintext(self, link_service, session: Session) -> None:
        code = link_service.issue_verification(EMAIL, session)
        row = session.exec(select(VerificationToken)).one()
        assert len(code) == 48
        assert row.token_hash == sha256_hash(code.encode())
        assert EMAIL not in row.identifier_hash
        assert code not in row.token_ciphertext
        assert row.purpose == "email_verification"

    def test_ttl(self, link_service, session: Session, clock) -> None:
        link_service.issue_verification(EMAIL, session)
        row = session.exec(select(VerificationToken)).one()
        assert as_utc(row.created_at) == clock.now
        assert as_utc(row.expires_at) == clock.now + timedelta(hours=24)

    def test_reset_ttl(self, link_service, session: Session, clock) -> None:
        link_service.issue_verification(EMAIL, session, TokenPurpose.PASSWORD_RESET)
        row = session.exec(select(VerificationToken)).one()
        assert as_utc(row.expires_at) == clock.now + timedelta(minutes=60)

    def test_debounced_within_window(self, link_service, session: Session, clock, audit) -> None:
        first = link_service.issue_verification(EMAIL, session)
        clock.advance(minutes=4, seconds=59)
        second = link_service.issue_verification(EMAIL, session)
        assert first == second
        assert len(session.exec(select(VerificationToken)).all()) == 1
        assert _actions(audit) == ["verification_issued", "verification_debounced"]

    def test_identifier_case_insensitive(self, link_service, session: Session) -> None:
        first = link_service.issue_verification(EMAIL, session)
        assert link_service.issue_verification(EMAIL.upper(), session) == first

    def test_superseded_after_window(self, link_service, session: Session, clock) -> None:
        first = link_service.issue_verification(EMAIL, session)
        clock.advance(minutes=5)
        second = link_service.issue_verification(EMAIL, session)
        assert first != second
        rows = session.exec(select(VerificationToken)).all()
        assert len(rows) == 1
        assert rows[0].token_hash == sha256_hash(second.encode())

    def test_purposes_independent(self, link_service, session: Session) -> None:
        verify = link_service.issue_verification(EMAIL, session, TokenPurpose.EMAIL_VERIFICATION)
        reset = link_service.issue_verification(EMAIL, session, TokenPurpose.PASSWORD_RESET)
        assert verify != reset
        assert len(session.exec(select(VerificationToken)).all()) == 2

    def test_unreadable_row_is_superseded(self, link_service, session: Session) -> None:
        link_service.issue_verification(EMAIL, session)
        row = session.exec(select(VerificationToken)).one()
        row.token_ciphertext = "v1.AAAA"
        session.add(row)
        session.commit()

        code = link_service.issue_verification(EMAIL, session)
        row = session.exec(select(VerificationToken)).one()
        assert row.token_hash == sha256_hash(code.encode())

    def test_race_returns_winner_code(self, link_service, session: Session, monkeypatch) -> None:
        winner = link_service.issue_verification(EMAIL, session)
        real_find = TokenizedLinkService._find_by_identifier
        calls = []

        def _miss_first(id_hash, purpose, db):
            calls.append(id_hash)
            if len(calls) == 1:
                return None  # concurrent issuer has not committed yet
            return real_find(id_hash, purpose, db)

        monkeypatch.setattr(link_service, "_find_by_identifier", _miss_first)
        assert link_service.issue_verification(EMAIL, session) == winner
        assert len(session.exec(select(VerificationToken)).all()) == 1

    def test_race_without_reusable_winner(self, link_service, session: Session, monkeypatch) -> None:
        link_service.issue_verification(EMAIL, session)
        monkeypatch.setattr(link_service, "_find_by_identifier", lambda *args: None)
        with pytest.raises(ProtectionError):
            link_service.issue_verification(EMAIL, session)


class TestLinkPayload:
    def test_build_link(self, link_service) -> None:
        link = link_service.build_link(EMAIL, "abc123")
        parts = urlsplit(link)
        assert f"{parts.scheme}://{parts.netloc}" == "https://classmate.test"
        assert parts.path == "/auth/verify-email/verify"
        query = parse_qs(parts.query)
        assert set(query) == {"e", "t", "h"}
        assert EMAIL not in link

    def test_reset_link_path(self, link_service) -> None:
        link = link_service.build_link(EMAIL, "abc123", TokenPurpose.PASSWORD_RESET)
        assert urlsplit(link).path == "/auth/reset-password"

    def test_parse_roundtrip(self, link_service) -> None:
        payload = _payload(link_service, EMAIL, "abc123")
        assert payload.identifier == EMAIL
        assert payload.token == "abc123"
        assert payload.is_complete
        assert link_service.verify_link_payload(payload)

    def test_parse_accepts_mapping(self, link_service) -> None:
        query = parse_qs(link_service.build_link_payload(EMAIL, "abc123"))
        payload = link_service.parse_link_payload({k: v[0] for k, v in query.items()})
        assert payload.identifier == EMAIL

    @pytest.mark.parametrize(
        "params",
        [
            None,
            "",
            "e=&t=&h=",
            "t=abc&h=1.x",
            "e=!!!&t=abc&h=1700000000." + "A" * 43,
            "e=YQ&t=abc&t=def&h=1700000000." + "A" * 43,
            "e=YQ&t=" + "a" * 300 + "&h=1700000000." + "A" * 43,
            "e=YQ&t=a%20b&h=1700000000." + "A" * 43,
            "e=YQ&t=abc&h=not-a-tag",
            "e=%FF%FE&t=abc&h=1700000000." + "A" * 43,
            {"e": None, "t": "abc", "h": "x"},
            {"e": 5, "t": "abc", "h": "x"},
            {},
        ],
    )
    def test_parse_never_raises(self, link_service, params) -> None:
        payload = link_service.parse_link_payload(params)
        assert payload == LinkPayload()
        assert not payload.is_complete
        assert not link_service.verify_link_payload(payload)

    def test_wrong_purpose_rejected(self, link_service) -> None:
        payload = _payload(link_service, EMAIL, "abc123")
        assert not link_service.verify_link_payload(payload, TokenPurpose.PASSWORD_RESET)

    def test_swapped_identifier_rejected(self, link_service) -> None:
        payload = _payload(link_service, EMAIL, "abc123")
        forged = LinkPayload(identifier="mallory@example.edu", token=payload.token, tag=payload.tag)
        assert not link_service.verify_link_payload(forged)

    def test_tampered_tag_rejected(self, link_service) -> None:
        payload = _payload(link_service, EMAIL, "abc123")
        issued, mac = payload.tag.split(".")
        flipped = ("B" if mac[0] != "B" else "C") + mac[1:]
        forged = LinkPayload(identifier=EMAIL, token="abc123", tag=f"{issued}.{flipped}")
        assert not link_service.verify_link_payload(forged)

    def test_backdated_issuance_rejected(self, link_service) -> None:
        payload = _payload(link_service, EMAIL, "abc123")
        issued, mac = payload.tag.split(".")
        forged = LinkPayload(identifier=EMAIL, token="abc123", tag=f"{int(issued) + 1}.{mac}")
        assert not link_service.verify_link_payload(forged)

    def test_future_issuance_beyond_skew(self, link_service, clock) -> None:
        early = _payload(link_service, EMAIL, "abc", issued_at=clock.now + timedelta(seconds=61))
        assert not link_service.verify_link_payload(early)
        within = _payload(link_service, EMAIL, "abc", issued_at=clock.now + timedelta(seconds=30))
        assert link_service.verify_link_payload(within)

    def test_link_too_old(self, link_service, clock) -> None:
        payload = _payload(link_service, EMAIL, "abc123")
        clock.advance(hours=24)
        assert link_service.verify_link_payload(payload)
        clock.advance(seconds=1)
        assert not link_service.verify_link_payload(payload)

    def test_other_key_rejected(self, link_service, protection, settings) -> None:
        from app.services.keyring import KeyRing

        other = TokenizedLinkService(
            KeyRing("some-other-deployment-secret-of-enough-length"), protection, settings
        )
        payload = _payload(link_service, EMAIL, "abc123")
        assert not other.verify_link_payload(payload)


class TestConsumeVerification:
    def test_consume(self, link_service, session: Session, audit) -> None:
        code = link_service.issue_verification(EMAIL, session)
        payload = _payload(link_service, EMAIL, code)
        assert link_service.consume_verification(payload, session) == EMAIL
        assert session.exec(select(VerificationToken)).all() == []
        assert _actions(audit)[-1] == "verification_consumed"

    def test_single_use(self, link_service, session: Session) -> None:
        code = link_service.issue_verification(EMAIL, session)
        payload = _payload(link_service, EMAIL, code)
        link_service.consume_verification(payload, session)
        with pytest.raises(TokenExpiredOrInvalid):
            link_service.consume_verification(payload, session)

    def test_superseded_code_rejected(self, link_service, session: Session, clock) -> None:
        old = link_service.issue_verification(EMAIL, session)
        old_payload = _payload(link_service, EMAIL, old)
        clock.advance(minutes=6)
        new = link_service.issue_verification(EMAIL, session)
        with pytest.raises(TokenExpiredOrInvalid):
            link_service.consume_verification(old_payload, session)
        assert link_service.consume_verification(_payload(link_service, EMAIL, new), session) == EMAIL

    def test_expired_row_rejected_and_removed(self, link_service, session: Session, clock) -> None:
        code = link_service.issue_verification(EMAIL, session)
        clock.advance(hours=24, seconds=1)
        # Fresh link so only the stored expiry is in play.
        payload = _payload(link_service, EMAIL, code)
        with pytest.raises(TokenExpiredOrInvalid):
            link_service.consume_verification(payload, session)
        assert session.exec(select(VerificationToken)).all() == []

    def test_identifier_mismatch(self, link_service, session: Session) -> None:
        code = link_service.issue_verification(EMAIL, session)
        payload = _payload(link_service, "someone@example.edu", code)
        with pytest.raises(TokenExpiredOrInvalid):
            link_service.consume_verification(payload, session)
        # The rightful owner can still use it.
        assert link_service.consume_verification(_payload(link_service, EMAIL, code), session) == EMAIL

    def test_wrong_purpose(self, link_service, session: Session) -> None:
        code = link_service.issue_verification(EMAIL, session, TokenPurpose.PASSWORD_RESET)
        payload = _payload(link_service, EMAIL, code, purpose=TokenPurpose.PASSWORD_RESET)
        with pytest.raises(TokenExpiredOrInvalid):
            link_service.consume_verification(payload, session, TokenPurpose.EMAIL_VERIFICATION)
        assert (
            link_service.consume_verification(payload, session, TokenPurpose.PASSWORD_RESET)
            == EMAIL
        )

    def test_unknown_code(self, link_service, session: Session, audit) -> None:
        payload = _payload(link_service, EMAIL, "never-issued")
        with pytest.raises(TokenExpiredOrInvalid) as exc_info:
            link_service.consume_verification(payload, session)
        assert str(exc_info.value) == "Invalid or expired verification link"
        rejected = audit.record.call_args
        assert rejected.args[0] == "verification_rejected"
        assert rejected.kwargs["detail"] == {"purpose": "email_verification", "reason": "unknown"}

    def test_empty_payload(self, link_service, session: Session) -> None:
        with pytest.raises(TokenExpiredOrInvalid):
            link_service.consume_verification(LinkPayload(), session)


class TestMaintenance:
    def test_sweep_expired(self, link_service, session: Session, clock) -> None:
        link_service.issue_verification("a@example.edu", session)
        clock.advance(hours=23)
        link_service.issue_verification("b@example.edu", session)
        clock.advance(hours=1, seconds=1)
        assert link_service.sweep_expired(session) == 1
        remaining = session.exec(select(VerificationToken)).one()
        assert remaining.identifier_hash == link_service.identifier_hash("b@example.edu")

    def test_revoke(self, link_service, session: Session) -> None:
        link_service.issue_verification(EMAIL, session)
        assert link_service.revoke(EMAIL, session) == 1
        assert link_service.revoke(EMAIL, session) == 0


class TestStoredTimestamps:
    def test_debounce_after_reload(self, link_service, session: Session, clock) -> None:
        first = link_service.issue_verification(EMAIL, session)
        session.expire_all()
        clock.advance(minutes=1)
        assert link_service.issue_verification(EMAIL, session) == first

    def test_expiry_after_reload(self, link_service, session: Session, clock) -> None:
        code = link_service.issue_verification(EMAIL, session)
        payload = _payload(link_service, EMAIL, code)
        session.expire_all()
        clock.advance(hours=24)
        with pytest.raises(TokenExpiredOrInvalid):
            link_service.consume_verification(payload, session)
        assert session.exec(select(VerificationToken)).all() == []

    def test_read_back_as_utc(self, link_service, session: Session, clock) -> None:
        link_service.issue_verification(EMAIL, session)
        session.expire_all()
        row = session.exec(select(VerificationToken)).one()
        assert as_utc(row.created_at) == clock.now
        assert as_utc(row.created_at).utcoffset() == timedelta(0)


class TestDatabaseAuditSink:
    @pytest.fixture(name="file_engine")
    def file_engine_fixture(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'classmate.db'}",
            connect_args={"check_same_thread": False},
        )
        SQLModel.metadata.create_all(engine)
        yield engine
        engine.dispose()

    def test_supersede_keeps_every_event(self, file_engine, key_ring, settings, clock) -> None:
        audit = DatabaseAuditTrail(file_engine)
        service = TokenizedLinkService(
            key_ring, ProtectionService(key_ring, audit), settings, audit=audit, clock=clock
        )
        with Session(file_engine) as db:
            first = service.issue_verification(EMAIL, db)
            clock.advance(minutes=6)
            second = service.issue_verification(EMAIL, db)
        assert first != second

        with Session(file_engine) as db:
            actions = sorted(e.action for e in db.exec(select(AuditEvent)).all())
        assert actions == [
            "field_protected",
            "field_protected",
            "verification_issued",
            "verification_issued",
        ]

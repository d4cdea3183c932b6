import re

import pytest

from shorty import codes, crud


def test_generate_code():
    code = codes.generate_code()
    assert re.fullmatch(r"[A-Za-z0-9]{6}", code)
    assert len(codes.generate_code(8)) == 8

    generated = {codes.generate_code() for _ in range(200)}
    # 62**6 possibilities, a repeat here would mean a broken RNG
    assert len(generated) == 200


@pytest.mark.parametrize("code", ["abc123", "MYLINK1", "ABCDEFGH", "000000"])
def test_valid_codes(code):
    assert codes.is_valid_code(code)


@pytest.mark.parametrize("code", ["abc", "abcde", "abcdefghi", "abc-12", "abc 123", "ab_cdef", "abcdef\n", "", None, 123456])
def test_invalid_codes(code):
    assert not codes.is_valid_code(code)


def test_allocate_generates_fresh_code(db):
    code = codes.allocate(db)
    assert re.fullmatch(r"[A-Za-z0-9]{6}", code)
    assert not crud.code_exists(db, code)


def test_allocate_accepts_free_candidate(db):
    assert codes.allocate(db, "MYLINK1") == "MYLINK1"
    assert codes.allocate(db, "  MYLINK1 ") == "MYLINK1"


def test_allocate_blank_candidate_generates(db):
    assert len(codes.allocate(db, "   ")) == 6


def test_allocate_rejects_bad_candidate(db):
    with pytest.raises(codes.InvalidCode):
        codes.allocate(db, "abc")


def test_allocate_rejects_taken_candidate(db):
    crud.create_link(db, "MYLINK1", "https://example.com")
    with pytest.raises(codes.CodeExists):
        codes.allocate(db, "MYLINK1")


def test_allocate_retries_on_collision(db, monkeypatch):
    crud.create_link(db, "taken1", "https://example.com")
    rolls = iter(["taken1", "taken1", "fresh1"])
    monkeypatch.setattr(codes, "generate_code", lambda: next(rolls))

    assert codes.allocate(db) == "fresh1"


def test_allocate_fails_closed_when_exhausted(db, monkeypatch):
    crud.create_link(db, "taken1", "https://example.com")
    calls = []

    def roll():
        calls.append(1)
        return "taken1"

    monkeypatch.setattr(codes, "generate_code", roll)

    with pytest.raises(codes.CodeUnavailable):
        codes.allocate(db)
    assert len(calls) == codes.MAX_ATTEMPTS


def test_shorten_with_candidate(db):
    link = codes.shorten(db, "https://example.com", "MYLINK1")
    assert link.code == "MYLINK1"
    assert link.clicks == 0
    assert link.last_clicked is None


def test_shorten_candidate_lost_race(db, monkeypatch):
    crud.create_link(db, "MYLINK1", "https://example.com/first")
    # the existence check misses the row, the primary key still catches it
    monkeypatch.setattr(crud, "code_exists", lambda db, code: False)

    with pytest.raises(codes.CodeExists):
        codes.shorten(db, "https://example.com/second", "MYLINK1")
    assert crud.get_link(db, "MYLINK1").target == "https://example.com/first"


def test_shorten_regenerates_after_insert_conflict(db, monkeypatch):
    crud.create_link(db, "taken1", "https://example.com/first")
    monkeypatch.setattr(crud, "code_exists", lambda db, code: False)
    rolls = iter(["taken1", "fresh1"])
    monkeypatch.setattr(codes, "generate_code", lambda: next(rolls))

    link = codes.shorten(db, "https://example.com/second")
    assert link.code == "fresh1"
    assert crud.get_link(db, "taken1").target == "https://example.com/first"


def test_shorten_never_returns_duplicate(db, monkeypatch):
    crud.create_link(db, "taken1", "https://example.com/first")
    monkeypatch.setattr(crud, "code_exists", lambda db, code: False)
    calls = []

    def roll():
        calls.append(1)
        return "taken1"

    monkeypatch.setattr(codes, "generate_code", roll)

    with pytest.raises(codes.CodeUnavailable):
        codes.shorten(db, "https://example.com/second")
    assert len(calls) == codes.MAX_ATTEMPTS
    assert len(crud.get_links(db)) == 1


def test_shorten_attempts_are_shared_between_check_and_insert(db, monkeypatch):
    crud.create_link(db, "taken1", "https://example.com/first")
    checks = []

    def flaky_exists(db, code):
        # every other check misses the row, so the insert has to catch it
        checks.append(code)
        return len(checks) % 2 == 1

    calls = []

    def roll():
        calls.append(1)
        return "taken1"

    monkeypatch.setattr(crud, "code_exists", flaky_exists)
    monkeypatch.setattr(codes, "generate_code", roll)

    with pytest.raises(codes.CodeUnavailable):
        codes.shorten(db, "https://example.com/second")
    assert len(calls) == codes.MAX_ATTEMPTS


@pytest.mark.parametrize("code", ["config", "Config", "healthz", "HEALTHZ"])
def test_allocate_rejects_reserved_candidate(db, code):
    with pytest.raises(codes.InvalidCode):
        codes.allocate(db, code)
    with pytest.raises(codes.InvalidCode):
        codes.shorten(db, "https://example.com", code)
    assert crud.get_links(db) == []


def test_generated_reserved_code_is_rerolled(db, monkeypatch):
    rolls = iter(["config", "Healthz", "fresh1"])
    monkeypatch.setattr(codes, "generate_code", lambda: next(rolls))

    link = codes.shorten(db, "https://example.com")
    assert link.code == "fresh1"

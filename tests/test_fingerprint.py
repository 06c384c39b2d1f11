"""Tests for histdb.storage.fingerprint."""

from histdb.storage.fingerprint import canonical_identity, fingerprint, fingerprint_fields


BASE = dict(
    command="git status",
    executed_at=1700000000,
    parent_pid=4242,
    working_dir="/src/app",
    salt=17,
)


class TestFingerprint:
    def test_deterministic(self):
        assert fingerprint_fields(**BASE) == fingerprint_fields(**BASE)

    def test_is_sha256_hex(self):
        fp = fingerprint_fields(**BASE)
        assert len(fp) == 64
        int(fp, 16)

    def test_every_identity_field_matters(self):
        base = fingerprint_fields(**BASE)
        changes = {
            "command": "git stash",
            "executed_at": 1700000001,
            "parent_pid": 4243,
            "working_dir": "/src/other",
            "salt": 18,
        }
        for key, value in changes.items():
            changed = dict(BASE, **{key: value})
            assert fingerprint_fields(**changed) != base, key

    def test_absent_session_id_differs_from_present(self):
        assert fingerprint_fields(**BASE) != fingerprint_fields(**BASE, session_id=0)

    def test_no_separator_injection(self):
        a = fingerprint_fields(**dict(BASE, working_dir="/a\nb", command="c"))
        b = fingerprint_fields(**dict(BASE, working_dir="/a", command="b\nc"))
        assert a != b

    def test_entry_matches_fields(self, make_entry):
        e = make_entry(**BASE)
        assert fingerprint(e) == fingerprint_fields(**BASE)

    def test_id_is_not_part_of_identity(self, make_entry):
        a = make_entry()
        b = make_entry()
        b.id = 99
        assert fingerprint(a) == fingerprint(b)

    def test_canonical_identity_uses_null_placeholder(self):
        text = canonical_identity(**BASE)
        assert "null" in text
        assert text.startswith("[1700000000,4242,17,null,")

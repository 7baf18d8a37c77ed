"""Tests for bundle checksum and signature verification."""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from wsapply.cli import main
from wsapply.models import Bundle
from wsapply.validation import ValidationGate, signature_check
from wsapply.validation.signature_check import (
    BundleVerifier,
    canonical_json,
    load_public_key,
    sha256_hex,
    sign_payload,
)


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def public_pem(private_key):
    return private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _document(content="print('hi')\n"):
    return {
        "id": "b1",
        "type": "patch",
        "files": [{"path": "app.py", "content": content, "checksum": sha256_hex(content)}],
        "migrations": [{
            "id": "m1",
            "sql_forward": "CREATE TABLE t (id INT)",
            "sql_reverse": "DROP TABLE t",
            "checksum_forward": sha256_hex("CREATE TABLE t (id INT)"),
        }],
    }


def test_canonical_json_sorts_keys_without_whitespace():
    assert canonical_json({"b": [1, {"d": 1, "c": "é"}], "a": None}) == '{"a":null,"b":[1,{"c":"é","d":1}]}'.encode()


def test_matching_checksums_pass():
    outcome = BundleVerifier().check(Bundle.from_dict(_document()))
    assert outcome.passed
    assert outcome.details["checksums_checked"] == 2
    assert outcome.details["signature_verified"] is False


def test_checksum_mismatch_fails():
    doc = _document()
    doc["files"][0]["content"] = "print('tampered')\n"
    outcome = BundleVerifier().check(Bundle.from_dict(doc))
    assert not outcome.passed
    assert [m["target"] for m in outcome.details["checksum_mismatches"]] == ["app.py"]


def test_migration_checksum_mismatch_fails():
    doc = _document()
    doc["migrations"][0]["sql_forward"] = "DROP TABLE users"
    outcome = BundleVerifier().check(Bundle.from_dict(doc))
    assert outcome.details["checksum_mismatches"][0]["target"] == "migration:m1/sql_forward"


def test_valid_signature_verifies(private_key, public_pem):
    signed = sign_payload(_document(), private_key, key_id="studio")
    outcome = BundleVerifier(public_pem).check(Bundle.from_dict(signed))
    assert outcome.passed, outcome.message
    assert outcome.details["signature_verified"] is True


def test_signature_survives_a_json_file_round_trip(private_key, public_pem):
    from wsapply.models.bundle import load_bundle

    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "bundle.json"
        path.write_text(json.dumps(sign_payload(_document("naïve = 1\n"), private_key)), encoding="utf-8")
        outcome = BundleVerifier(public_pem).check(load_bundle(path))
    assert outcome.passed, outcome.message


def test_tampered_bundle_is_rejected(private_key, public_pem):
    signed = sign_payload(_document(), private_key)
    signed["type"] = "full"
    outcome = BundleVerifier(public_pem).check(Bundle.from_dict(signed))
    assert not outcome.passed
    assert outcome.details["signature_problems"] == ["Bundle signature is invalid"]


def test_signature_from_another_key_is_rejected(public_pem):
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    signed = sign_payload(_document(), other)
    assert not BundleVerifier(public_pem).check(Bundle.from_dict(signed)).passed


def test_old_signature_is_rejected(private_key, public_pem):
    eight_days_ago = datetime.now(timezone.utc) - timedelta(days=8)
    signed = sign_payload(_document(), private_key, signed_at=eight_days_ago)
    problems = BundleVerifier(public_pem).signature_problems(Bundle.from_dict(signed))
    assert problems == ["Signature is too old: 8 day(s)"]


def test_unsupported_algorithm_is_rejected(private_key, public_pem):
    signed = sign_payload(_document(), private_key)
    signed["signature"]["algorithm"] = "RSA-MD5"
    problems = BundleVerifier(public_pem).signature_problems(Bundle.from_dict(signed))
    assert problems == ["Unsupported signature algorithm: RSA-MD5"]


def test_unsigned_bundle_only_fails_when_signatures_are_required(public_pem):
    bundle = Bundle.from_dict(_document())
    assert BundleVerifier(public_pem).check(bundle).passed
    outcome = BundleVerifier(public_pem, require_signature=True).check(bundle)
    assert not outcome.passed
    assert "not signed" in outcome.message


def test_signed_bundle_without_key(private_key):
    bundle = Bundle.from_dict(sign_payload(_document(), private_key))
    assert BundleVerifier().check(bundle).passed
    assert not BundleVerifier(require_signature=True).check(bundle).passed


def test_load_public_key_rejects_garbage():
    with pytest.raises(ValueError):
        load_public_key("-----BEGIN PUBLIC KEY-----\nnope\n-----END PUBLIC KEY-----\n")


def test_signature_check_blocks_the_gate(private_key, public_pem):
    signed = sign_payload(_document(), private_key)
    signed["files"][0]["path"] = "other.py"
    result = ValidationGate([signature_check(public_pem)]).run_all(Bundle.from_dict(signed))
    assert result.passed is False
    assert result.blockers[0].check == "SignatureCheck"


def test_cli_validate_with_public_key(private_key, public_pem):
    with tempfile.TemporaryDirectory() as tmpdir:
        key_path = Path(tmpdir) / "public.pem"
        key_path.write_bytes(public_pem)
        doc = {"id": "b1", "files": [{"path": "notes.txt", "content": "hello"}]}
        good = Path(tmpdir) / "good.json"
        good.write_text(json.dumps(sign_payload(doc, private_key)), encoding="utf-8")
        unsigned = Path(tmpdir) / "unsigned.json"
        unsigned.write_text(json.dumps(doc), encoding="utf-8")

        runner = CliRunner()
        ok = runner.invoke(main, ["validate", str(good), "--public-key", str(key_path), "--require-signature"])
        refused = runner.invoke(main, ["validate", str(unsigned), "--public-key", str(key_path), "--require-signature"])

    assert ok.exit_code == 0, ok.output
    assert refused.exit_code == 1
    assert "SignatureCheck" in refused.output

import json
import logging

from feedgate import verify_audit
from feedgate.audit import (
    GENESIS_HASH,
    AuditChain,
    SecurityAuditLog,
    check_log_chain,
    token_hash,
    verify_log_chain,
)


def _lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_events_are_hash_chained(tmp_path):
    audit = SecurityAuditLog(tmp_path)
    audit.auth_success("alice", "203.0.113.7")
    audit.auth_failure("203.0.113.7", "curl/8", "invalid_token")
    audit.token_usage("some-token", "https://news.example/a", True)

    log = tmp_path / "security_audit.jsonl"
    records = _lines(log)
    assert [r["security_event"] for r in records] == ["auth_success", "auth_failure", "token_usage"]
    assert records[0]["prev_hash"] == GENESIS_HASH
    assert records[1]["prev_hash"] == records[0]["hash"]
    assert records[2]["prev_hash"] == records[1]["hash"]

    state = (tmp_path / "security_audit.state").read_text().strip()
    assert state == records[-1]["hash"]

    report = check_log_chain(log, tmp_path / "security_audit.state")
    assert report.ok
    assert report.lines == 3
    assert report.last_hash == state


def test_tampering_breaks_the_chain(tmp_path):
    audit = SecurityAuditLog(tmp_path)
    audit.auth_failure("203.0.113.7", None, "invalid_token")
    audit.auth_success("alice", "203.0.113.7")

    log = tmp_path / "security_audit.jsonl"
    lines = log.read_text(encoding="utf-8").splitlines()
    lines[0] = lines[0].replace("invalid_token", "missing_token")
    log.write_text("\n".join(lines) + "\n", encoding="utf-8")

    report = check_log_chain(log)
    assert not report.ok
    assert "hash mismatch" in report.message
    assert not verify_log_chain(log)


def test_deleted_line_breaks_the_chain(tmp_path):
    audit = SecurityAuditLog(tmp_path)
    for i in range(3):
        audit.auth_success(f"user{i}")

    log = tmp_path / "security_audit.jsonl"
    lines = log.read_text(encoding="utf-8").splitlines()
    log.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

    report = check_log_chain(log)
    assert not report.ok
    assert "prev_hash mismatch" in report.message


def test_missing_log_is_an_empty_chain(tmp_path):
    assert verify_log_chain(tmp_path / "nothing.jsonl")


def test_state_file_must_match(tmp_path):
    audit = SecurityAuditLog(tmp_path)
    audit.auth_success("alice")
    (tmp_path / "security_audit.state").write_text("f" * 64)

    report = check_log_chain(tmp_path / "security_audit.jsonl", tmp_path / "security_audit.state")
    assert not report.ok
    assert "State mismatch" in report.message


def test_callers_cannot_inject_chain_fields(tmp_path):
    chain = AuditChain(tmp_path)
    stored = chain.append({"security_event": "x", "prev_hash": "0" * 64, "hash": "f" * 64})

    assert stored["prev_hash"] == GENESIS_HASH
    assert stored["hash"] != "f" * 64
    assert verify_log_chain(chain.log_path)


def test_feed_tokens_are_hashed(tmp_path):
    audit = SecurityAuditLog(tmp_path)
    audit.token_usage("eJyrVkrOz0nVUQ-raw-token", "https://news.example/a", False, "expired")

    text = (tmp_path / "security_audit.jsonl").read_text(encoding="utf-8")
    assert "eJyrVkrOz0nVUQ-raw-token" not in text
    assert token_hash("eJyrVkrOz0nVUQ-raw-token") in text


def test_events_are_logged(caplog):
    audit = SecurityAuditLog()
    with caplog.at_level(logging.INFO, logger="feedgate.security"):
        audit.access_denied("alice", "https://evil.example/", "policy_denied")

    (record,) = caplog.records
    assert record.getMessage() == "access_denied"
    assert record.levelno == logging.WARNING
    assert record.event["reason"] == "policy_denied"


def test_write_failure_is_not_raised(tmp_path, caplog):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    audit = SecurityAuditLog(blocker / "audit")

    with caplog.at_level(logging.ERROR, logger="feedgate.security"):
        audit.auth_success("alice")

    assert any(r.getMessage() == "Security audit write failed" for r in caplog.records)


def test_verify_cli(tmp_path, capsys):
    audit = SecurityAuditLog(tmp_path)
    audit.auth_success("alice")
    log = tmp_path / "security_audit.jsonl"

    assert verify_audit.main([str(log), "--state", str(tmp_path / "security_audit.state")]) == 0
    assert capsys.readouterr().out.startswith("OK")

    log.write_text(log.read_text(encoding="utf-8").replace("alice", "mallory"), encoding="utf-8")
    assert verify_audit.main([str(log)]) == 1
    assert capsys.readouterr().err.startswith("FAIL")

    assert verify_audit.main([str(tmp_path / "missing.jsonl")]) == 1

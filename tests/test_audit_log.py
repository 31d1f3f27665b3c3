"""Tests for the admin audit log hash chain."""

import json

import pytest

from cblock.admin.audit_log import AuditLog
from cblock.admin.models import AuditLogType, User
from cblock.documents.models import UserRole
from cblock.errors import LoadError, StorageError
from cblock.storage.backend import AUDIT_LOGS_KEY, MemoryBackend

ADMIN = User(id="user_admin", email="admin@example.com", role=UserRole.ADMIN)


def test_append_builds_hash_chain(backend: MemoryBackend):
    log = AuditLog(backend)
    e1 = log.append(AuditLogType.USER_CREATED, ADMIN, {"target_user_email": "a@example.com"})
    assert e1.prev_hash is None
    assert e1.entry_hash.startswith("sha256:")
    assert e1.id.startswith("log_")
    assert e1.actor_email == "admin@example.com"

    e2 = log.append(AuditLogType.ROLE_CHANGE, ADMIN, target_user_id="user_a")
    assert e2.prev_hash == e1.entry_hash
    assert log.last_hash == e2.entry_hash
    assert len(log) == 2


def test_chain_resumes_after_reload(backend: MemoryBackend):
    e1 = AuditLog(backend).append(AuditLogType.BACKUP_CREATED, ADMIN)
    reloaded = AuditLog(backend)
    e2 = reloaded.append(AuditLogType.DATA_RESTORED, ADMIN)
    assert e2.prev_hash == e1.entry_hash
    assert [e.type for e in reloaded.entries()] == [
        AuditLogType.BACKUP_CREATED,
        AuditLogType.DATA_RESTORED,
    ]


def test_verify_valid_chain(backend: MemoryBackend):
    log = AuditLog(backend)
    for _ in range(4):
        log.append(AuditLogType.CREDENTIALS_UPDATED, ADMIN, {"n": 1})
    result = log.verify()
    assert result.valid is True
    assert result.entries_checked == 4
    assert result.first_error is None


def test_verify_empty_log(backend: MemoryBackend):
    result = AuditLog(backend).verify()
    assert result.valid is True
    assert result.entries_checked == 0


def test_verify_detects_edited_entry(backend: MemoryBackend):
    log = AuditLog(backend)
    log.append(AuditLogType.ROLE_CHANGE, ADMIN, {"new_role": "verifier"})
    log.append(AuditLogType.ROLE_CHANGE, ADMIN, {"new_role": "business"})

    pairs = json.loads(backend.get(AUDIT_LOGS_KEY))
    pairs[1][1]["details"]["new_role"] = "admin"
    backend.set(AUDIT_LOGS_KEY, json.dumps(pairs))

    result = AuditLog(backend).verify()
    assert result.valid is False
    assert result.entries_checked == 2
    assert "hash mismatch" in result.first_error


def test_verify_detects_dropped_entry(backend: MemoryBackend):
    log = AuditLog(backend)
    for i in range(3):
        log.append(AuditLogType.USER_DELETED, ADMIN, {"i": i})

    pairs = json.loads(backend.get(AUDIT_LOGS_KEY))
    del pairs[1]
    backend.set(AUDIT_LOGS_KEY, json.dumps(pairs))

    result = AuditLog(backend).verify()
    assert result.valid is False
    assert result.entries_checked == 2
    assert "prev_hash mismatch" in result.first_error


def test_corrupt_log_refuses_to_load(backend: MemoryBackend):
    backend.set(AUDIT_LOGS_KEY, "[[broken")
    with pytest.raises(LoadError):
        AuditLog(backend)


def test_replace_validates_before_swapping(backend: MemoryBackend):
    log = AuditLog(backend)
    log.append(AuditLogType.USER_CREATED, ADMIN)
    exported = log.export()

    with pytest.raises(StorageError):
        log.replace([["bad", {"type": "not-a-type"}]])
    assert len(log) == 1

    other = AuditLog(MemoryBackend())
    other.replace(exported)
    assert other.verify().valid is True
    assert other.last_hash == log.last_hash


class FailingBackend(MemoryBackend):
    def set(self, key: str, value: str) -> None:
        raise StorageError("disk full")


def test_failed_persist_does_not_append():
    log = AuditLog(FailingBackend())
    with pytest.raises(StorageError):
        log.append(AuditLogType.USER_CREATED, ADMIN)
    assert len(log) == 0
    assert log.last_hash is None


def test_failed_replace_keeps_current_entries():
    backend = MemoryBackend()
    log = AuditLog(backend)
    log.append(AuditLogType.USER_CREATED, ADMIN)
    exported = log.export()

    failing = AuditLog(FailingBackend())
    with pytest.raises(StorageError):
        failing.replace(exported)
    assert len(failing) == 0

"""
Account provisioning across the credential and profile stores.

Why:
    Create/update/delete touch two stores without a shared transaction. These
    tests pin the saga behavior: ordering, compensation, warnings for
    secondary failures, and that primary outcomes never flip.
"""
from __future__ import annotations

import pytest

from backend.identity_access import telemetry
from backend.identity_access.accounts import AccountPatch, NewAccount
from backend.identity_access.errors import DuplicateError, NotFoundError, StoreError, ValidationError


def _new(email: str = "sara@example.com", name: str = "Sara Ali", **kw) -> NewAccount:
    return NewAccount(full_name=name, email=email, password=kw.pop("password", "secret1"), **kw)


def _actions(table) -> list:
    return [row["action"] for row in table.rows.values()]


@pytest.mark.anyio
async def test_create_account_writes_credential_profile_and_audit(stack):
    result = await stack.provisioner.create_account(_new(phone="0500", parent_phone="0511"))

    account = result.value
    assert result.partial is False
    assert account.email == "sara@example.com"
    assert account.status == "active"
    [credential] = stack.credentials.entities.values()
    assert account.credential_ref == credential["id"]
    assert credential["email_confirmed"] is True
    assert credential["metadata"] == {
        "full_name": "Sara Ali",
        "role": "student",
        "phone": "0500",
        "parent_phone": "0511",
    }
    assert _actions(stack.audit_table) == ["account_created"]
    [row] = stack.audit_table.rows.values()
    assert (row["action_type"], row["severity"], row["status"]) == ("create", "low", "success")
    assert row["resource_id"] == account.id


@pytest.mark.anyio
@pytest.mark.parametrize(
    "data, code",
    [
        (NewAccount(full_name="  ", email="a@example.com", password="secret1"), "full_name_required"),
        (NewAccount(full_name="A", email="", password="secret1"), "email_required"),
        (NewAccount(full_name="A", email="a@example.com", password="12345"), "password_too_short"),
        (NewAccount(full_name="A", email="a@example.com", password="secret1", status="gone"), "invalid_status"),
    ],
)
async def test_create_account_validates_before_io(stack, data, code):
    with pytest.raises(ValidationError) as ei:
        await stack.provisioner.create_account(data)
    assert ei.value.code == code
    assert stack.credentials.calls == []
    assert stack.profiles.calls == []


@pytest.mark.anyio
async def test_create_account_twice_same_email_raises_duplicate(stack):
    await stack.provisioner.create_account(_new())
    with pytest.raises(DuplicateError):
        await stack.provisioner.create_account(_new(email="SARA@example.com", name="Other"))

    assert len(stack.credentials.entities) == 1
    assert len(stack.profiles.rows) == 1


@pytest.mark.anyio
async def test_credential_failure_raises_store_error_without_profile(stack):
    stack.credentials.fail_next("create")
    with pytest.raises(StoreError) as ei:
        await stack.provisioner.create_account(_new())
    assert ei.value.store == "credentials"
    assert stack.profiles.calls == []
    assert stack.audit_table.rows == {}
    assert telemetry.counter_value(telemetry.PROVISIONING_FAILURES, store="credentials") == 1


@pytest.mark.anyio
async def test_profile_failure_rolls_back_credential(stack):
    stack.profiles.fail_next("insert")
    with pytest.raises(StoreError) as ei:
        await stack.provisioner.create_account(_new())

    assert ei.value.store == "profiles"
    assert ei.value.warnings == []
    assert stack.credentials.attempted("delete_by_id") == 1
    assert stack.credentials.entities == {}
    assert stack.profiles.rows == {}
    assert stack.audit_table.rows == {}


@pytest.mark.anyio
async def test_failed_rollback_is_attached_as_warning(stack):
    stack.profiles.fail_next("insert")
    stack.credentials.fail_next("delete_by_id")
    with pytest.raises(StoreError) as ei:
        await stack.provisioner.create_account(_new())

    assert ei.value.store == "profiles"
    assert [w.step for w in ei.value.warnings] == ["rollback_credential"]
    # The orphaned credential is still there for an operator to clean up.
    assert len(stack.credentials.entities) == 1
    assert telemetry.counter_value(telemetry.CONSISTENCY_WARNINGS, step="rollback_credential") == 1


@pytest.mark.anyio
async def test_create_profile_failure_log_lines(stack, caplog):
    caplog.set_level("INFO", logger="eduplatform.identity_access")
    stack.profiles.fail_next("insert")
    with pytest.raises(StoreError):
        await stack.provisioner.create_account(_new(password="very-secret-pw"))

    messages = [r.getMessage() for r in caplog.records]
    assert any("compensation rollback_credential succeeded" in m for m in messages)
    assert all("very-secret-pw" not in m for m in messages)


@pytest.mark.anyio
async def test_audit_failure_after_create_is_a_warning(stack):
    stack.audit_table.fail_on.add("insert")
    result = await stack.provisioner.create_account(_new())

    assert result.partial is True
    assert result.warning_steps() == ["audit_append"]
    assert len(stack.profiles.rows) == 1
    assert telemetry.counter_value(telemetry.AUDIT_APPEND_FAILURES, action="account_created") == 1


@pytest.mark.anyio
async def test_update_mirrors_identity_fields(stack):
    created = (await stack.provisioner.create_account(_new())).value
    result = await stack.provisioner.update_account(
        created.id, AccountPatch(full_name="Sara B. Ali", email="sara.b@example.com", phone="0599")
    )

    assert result.partial is False
    assert result.value.full_name == "Sara B. Ali"
    credential = stack.credentials.entities[created.credential_ref]
    assert credential["email"] == "sara.b@example.com"
    assert credential["metadata"]["full_name"] == "Sara B. Ali"
    assert credential["metadata"]["phone"] == "0599"
    entry, created_entry = await stack.audit.entries_for("user", created.id)
    assert (entry.action, created_entry.action) == ("account_updated", "account_created")
    assert entry.details["updated_fields"] == ["email", "full_name", "phone"]


@pytest.mark.anyio
async def test_update_status_only_does_not_touch_credentials(stack):
    created = (await stack.provisioner.create_account(_new())).value
    await stack.provisioner.update_account(created.id, AccountPatch(status="pending"))
    assert stack.credentials.attempted("update_by_id") == 0


@pytest.mark.anyio
async def test_update_mirror_failure_is_warning_and_profile_keeps_change(stack):
    created = (await stack.provisioner.create_account(_new())).value
    stack.credentials.fail_next("update_by_id")

    result = await stack.provisioner.update_account(created.id, AccountPatch(full_name="Renamed"))

    assert result.warning_steps() == ["mirror_credential"]
    row = stack.profiles.rows[created.id]
    assert row["full_name"] == "Renamed"
    assert stack.credentials.entities[created.credential_ref]["metadata"]["full_name"] == "Sara Ali"


@pytest.mark.anyio
async def test_update_primary_failure_raises_and_audits_failed(stack):
    a = (await stack.provisioner.create_account(_new())).value
    await stack.provisioner.create_account(_new(email="omar@example.com", name="Omar"))

    with pytest.raises(StoreError) as ei:
        await stack.provisioner.update_account(a.id, AccountPatch(email="omar@example.com"))

    assert ei.value.store == "profiles"
    assert stack.profiles.rows[a.id]["email"] == "sara@example.com"
    last = list(stack.audit_table.rows.values())[-1]
    assert (last["action"], last["status"]) == ("account_updated", "failed")


@pytest.mark.anyio
async def test_update_rejects_empty_patch_and_unknown_id(stack):
    with pytest.raises(ValidationError) as ei:
        await stack.provisioner.update_account("missing", AccountPatch())
    assert ei.value.code == "empty_patch"
    with pytest.raises(NotFoundError):
        await stack.provisioner.update_account("missing", AccountPatch(full_name="X"))
    with pytest.raises(ValidationError):
        await stack.provisioner.update_account("missing", AccountPatch(email="  "))


@pytest.mark.anyio
async def test_change_status_audits_medium_severity_for_suspension(stack):
    created = (await stack.provisioner.create_account(_new())).value
    result = await stack.provisioner.change_status(created.id, "suspended")

    assert result.value.status == "suspended"
    entry = (await stack.audit.entries_for("user", created.id))[0]
    assert entry.action == "account_status_changed"
    assert entry.severity == "medium"
    assert entry.details["previous_status"] == "active"

    with pytest.raises(ValidationError):
        await stack.provisioner.change_status(created.id, "archived")


@pytest.mark.anyio
async def test_delete_cascades_and_always_attempts_credential_delete(stack):
    created = (await stack.provisioner.create_account(_new())).value
    await stack.grants.assign(created.id, ["s1", "s2"])
    stack.credentials.fail_next("delete_by_id")

    result = await stack.provisioner.delete_account(created.id)

    assert result.partial is True
    assert result.warning_steps() == ["delete_credential"]
    assert stack.credentials.attempted("delete_by_id") == 1
    assert stack.profiles.rows == {}
    assert stack.grants_table.rows == {}
    # History for the account is purged; only the deletion entry remains.
    entries = await stack.audit.entries_for("user", created.id)
    assert [e.action for e in entries] == ["account_deleted"]
    assert entries[0].details["deleted_auth_account"] is False
    assert (entries[0].action_type, entries[0].severity) == ("delete", "medium")


@pytest.mark.anyio
async def test_delete_success_removes_credential(stack):
    created = (await stack.provisioner.create_account(_new())).value
    result = await stack.provisioner.delete_account(created.id)
    assert result.partial is False
    assert stack.credentials.entities == {}


@pytest.mark.anyio
async def test_delete_grant_failure_keeps_profile(stack):
    created = (await stack.provisioner.create_account(_new())).value
    stack.grants_table.fail_next("delete")

    with pytest.raises(StoreError) as ei:
        await stack.provisioner.delete_account(created.id)

    assert ei.value.store == "grants"
    assert created.id in stack.profiles.rows
    assert stack.credentials.attempted("delete_by_id") == 0


@pytest.mark.anyio
async def test_delete_purge_failure_is_warning(stack):
    created = (await stack.provisioner.create_account(_new())).value
    stack.audit_table.fail_next("delete")

    result = await stack.provisioner.delete_account(created.id)

    assert "purge_audit" in result.warning_steps()
    assert stack.profiles.rows == {}


@pytest.mark.anyio
async def test_delete_unknown_account_raises_not_found(stack):
    with pytest.raises(NotFoundError):
        await stack.provisioner.delete_account("nope")


@pytest.mark.anyio
async def test_list_accounts_search_filter_sort_and_paging(stack):
    for name, email in (("Sara Ali", "sara@example.com"), ("Omar Said", "omar@example.com"), ("Lina Ali", "lina@school.test")):
        await stack.provisioner.create_account(_new(email=email, name=name))
    omar = next(r for r in stack.profiles.rows.values() if r["email"] == "omar@example.com")
    await stack.provisioner.change_status(omar["id"], "suspended")

    page = await stack.provisioner.list_accounts()
    assert [a.full_name for a in page.accounts] == ["Lina Ali", "Omar Said", "Sara Ali"]
    assert page.total == 3

    by_name = await stack.provisioner.list_accounts(search="ALI")
    assert {a.full_name for a in by_name.accounts} == {"Sara Ali", "Lina Ali"}

    by_mail = await stack.provisioner.list_accounts(search="school.test")
    assert [a.email for a in by_mail.accounts] == ["lina@school.test"]

    suspended = await stack.provisioner.list_accounts(status="suspended")
    assert [a.full_name for a in suspended.accounts] == ["Omar Said"]

    second = await stack.provisioner.list_accounts(sort_by="full_name", descending=False, page=2, limit=2)
    assert [a.full_name for a in second.accounts] == ["Sara Ali"]
    assert (second.total, second.page, second.limit) == (3, 2, 2)

    with pytest.raises(ValidationError):
        await stack.provisioner.list_accounts(sort_by="password")


@pytest.mark.anyio
async def test_get_account(stack):
    created = (await stack.provisioner.create_account(_new())).value
    assert (await stack.provisioner.get_account(created.id)).email == "sara@example.com"
    with pytest.raises(NotFoundError):
        await stack.provisioner.get_account("missing")

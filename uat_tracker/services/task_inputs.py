"""
Request payload parsing for task operations.

Each operation gets one frozen dataclass. ``parse_<op>(payload)`` returns
``(input, None)`` on success or ``(None, errors)`` where ``errors`` maps a
field name to a message; the blueprint turns the latter into a 400.

Both snake_case and the legacy camelCase keys (``expectedUpdatedAt``,
``jiraTicket``, ``isPassed`` ...) are accepted.

``expected_updated_at`` is carried through untouched: the concurrency guard
owns its validation so a malformed value still yields MalformedExpectation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from uat_tracker.models.task import TASK_PRIORITIES
from uat_tracker.services.status_mapping import TaskStatus, to_internal
from uat_tracker.utils.helpers import parse_date_input

JIRA_TICKET_RE = re.compile(r"^(EO-\d+|\d+)$", re.IGNORECASE)

_MISSING = object()

_MAX_TITLE = 300
_MAX_SHORT = 40


def _pick(payload: dict, *keys: str):
    """Return the value of the first key present in ``payload``, else _MISSING."""
    for key in keys:
        if key in payload:
            return payload[key]
    return _MISSING


def _expected(payload: dict):
    value = _pick(payload, "expected_updated_at", "expectedUpdatedAt")
    return None if value is _MISSING else value


def _optional_text(value, field_name, errors, max_len=None):
    if value is None:
        return None
    if not isinstance(value, str):
        errors[field_name] = "must be a string"
        return None
    text = value.strip()
    if max_len and len(text) > max_len:
        errors[field_name] = f"must be ≤ {max_len} characters"
    return text or None


def _required_text(value, field_name, errors, max_len=None):
    if value is _MISSING or value is None or (isinstance(value, str) and not value.strip()):
        errors[field_name] = f"{field_name} is required"
        return ""
    return _optional_text(value, field_name, errors, max_len) or ""


def is_valid_jira_ticket(value) -> bool:
    if value is None:
        return True
    if not isinstance(value, str):
        return False
    trimmed = value.strip()
    if not trimmed:
        return True
    return bool(JIRA_TICKET_RE.match(trimmed))


def _optional_int(value, field_name, errors):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        errors[field_name] = "must be an integer"
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        errors[field_name] = "must be an integer"
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Status change
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StatusChangeInput:
    status: TaskStatus
    expected_updated_at: Any = None


def parse_status_change(payload: dict):
    raw = payload.get("status")
    if not isinstance(raw, str) or not raw.strip():
        return None, {"status": "status is required"}
    return StatusChangeInput(status=to_internal(raw), expected_updated_at=_expected(payload)), None


# ═══════════════════════════════════════════════════════════════════════════
# Steps
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StepOutcomeInput:
    fields: frozenset
    is_passed: bool | None = None
    actual_result: str | None = None
    attachments: tuple = ()
    expected_updated_at: Any = None


def parse_step_outcome(payload: dict):
    errors: dict = {}
    present = set()

    is_passed = _pick(payload, "is_passed", "isPassed")
    if is_passed is not _MISSING:
        if is_passed is not None and not isinstance(is_passed, bool):
            errors["is_passed"] = "must be true, false or null"
        present.add("is_passed")
    else:
        is_passed = None

    actual = _pick(payload, "actual_result", "actualResult")
    if actual is not _MISSING:
        actual = _optional_text(actual, "actual_result", errors)
        present.add("actual_result")
    else:
        actual = None

    attachments = _pick(payload, "attachments")
    if attachments is not _MISSING:
        if attachments is None:
            attachments = []
        if not isinstance(attachments, list) or not all(isinstance(a, str) for a in attachments):
            errors["attachments"] = "must be a list of strings"
            attachments = []
        present.add("attachments")
    else:
        attachments = []

    if not present and not errors:
        errors["is_passed"] = "nothing to update"
    if errors:
        return None, errors
    return StepOutcomeInput(
        fields=frozenset(present),
        is_passed=is_passed,
        actual_result=actual,
        attachments=tuple(attachments),
        expected_updated_at=_expected(payload),
    ), None


@dataclass(frozen=True)
class StepDefinitionInput:
    changes: dict
    expected_updated_at: Any = None


def parse_step_definition(payload: dict):
    errors: dict = {}
    changes = {}
    for attr, keys in (
        ("description", ("description",)),
        ("expected_result", ("expected_result", "expectedResult")),
        ("test_data", ("test_data", "testData")),
    ):
        value = _pick(payload, *keys)
        if value is _MISSING:
            continue
        if attr == "test_data":
            changes[attr] = _optional_text(value, attr, errors)
        else:
            changes[attr] = _required_text(value, attr, errors)
    if not changes and not errors:
        errors["description"] = "nothing to update"
    if errors:
        return None, errors
    return StepDefinitionInput(changes=changes, expected_updated_at=_expected(payload)), None


@dataclass(frozen=True)
class StepCreateInput:
    description: str
    expected_result: str
    test_data: str | None = None
    actual_result: str | None = None
    country_filter: str | None = None
    expected_updated_at: Any = None


def _parse_step_fields(payload: dict, errors: dict, prefix: str = ""):
    description = _required_text(payload.get("description"), f"{prefix}description", errors)
    expected = _required_text(
        _pick(payload, "expected_result", "expectedResult"), f"{prefix}expected_result", errors,
    )
    test_data = _pick(payload, "test_data", "testData")
    test_data = None if test_data is _MISSING else _optional_text(test_data, f"{prefix}test_data", errors)
    actual = _pick(payload, "actual_result", "actualResult")
    actual = None if actual is _MISSING else _optional_text(actual, f"{prefix}actual_result", errors)
    country_filter = _pick(payload, "country_filter", "countryFilter")
    country_filter = None if country_filter is _MISSING else _optional_text(
        country_filter, f"{prefix}country_filter", errors,
    )
    if country_filter and country_filter.upper() == "ALL":
        country_filter = None
    return description, expected, test_data, actual, country_filter.upper() if country_filter else None


def parse_step_create(payload: dict):
    errors: dict = {}
    description, expected, test_data, _actual, _cf = _parse_step_fields(payload, errors)
    if errors:
        return None, errors
    return StepCreateInput(
        description=description,
        expected_result=expected,
        test_data=test_data,
        expected_updated_at=_expected(payload),
    ), None


@dataclass(frozen=True)
class StepImportInput:
    steps: tuple
    expected_updated_at: Any = None


def _parse_step_list(raw, errors: dict, key: str = "steps") -> tuple:
    if not isinstance(raw, list) or not raw:
        errors[key] = "At least one step is required"
        return ()
    steps = []
    for idx, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            errors[f"{key}[{idx}]"] = "must be an object"
            continue
        description, expected, test_data, actual, country_filter = _parse_step_fields(
            item, errors, prefix=f"{key}[{idx}].",
        )
        steps.append(StepCreateInput(
            description=description,
            expected_result=expected,
            test_data=test_data,
            actual_result=actual,
            country_filter=country_filter,
        ))
    return tuple(steps)


def parse_step_import(payload: dict):
    errors: dict = {}
    steps = _parse_step_list(payload.get("steps"), errors)
    if errors:
        return None, errors
    return StepImportInput(steps=steps, expected_updated_at=_expected(payload)), None


# ═══════════════════════════════════════════════════════════════════════════
# Metadata edit
# ═══════════════════════════════════════════════════════════════════════════


_METADATA_KEYS = {
    "title": ("title",),
    "description": ("description",),
    "jira_ticket": ("jira_ticket", "jiraTicket"),
    "cr_number": ("cr_number", "crNumber"),
    "developer": ("developer",),
    "due_date": ("due_date", "dueDate"),
    "priority": ("priority",),
    "module_name": ("module_name", "module", "featureModule"),
    "assignee_id": ("assignee_id", "assigneeId"),
}


@dataclass(frozen=True)
class MetadataEditInput:
    delta: dict
    propagate_to_group: bool = False
    expected_updated_at: Any = None


def _parse_metadata_field(attr, value, errors):
    if attr == "title":
        return _required_text(value, "title", errors, max_len=_MAX_TITLE)
    if attr == "description":
        return _optional_text(value, "description", errors) or ""
    if attr == "jira_ticket":
        if not is_valid_jira_ticket(value):
            errors["jira_ticket"] = "Jira ticket must look like EO-123 or 123"
            return None
        return _optional_text(value, "jira_ticket", errors, max_len=_MAX_SHORT)
    if attr in ("cr_number", "developer"):
        return _optional_text(value, attr, errors, max_len=120)
    if attr == "due_date":
        try:
            return parse_date_input(value)
        except ValueError as exc:
            errors["due_date"] = str(exc)
            return None
    if attr == "priority":
        if not isinstance(value, str) or value.strip().upper() not in TASK_PRIORITIES:
            errors["priority"] = f"must be one of {', '.join(TASK_PRIORITIES)}"
            return None
        return value.strip().upper()
    if attr == "module_name":
        return _optional_text(value, "module_name", errors, max_len=120) or ""
    if attr == "assignee_id":
        return _optional_int(value, "assignee_id", errors)
    raise KeyError(attr)


def parse_metadata_edit(payload: dict):
    errors: dict = {}
    delta = {}
    for attr, keys in _METADATA_KEYS.items():
        value = _pick(payload, *keys)
        if value is _MISSING:
            continue
        delta[attr] = _parse_metadata_field(attr, value, errors)

    if not delta and not errors:
        errors["fields"] = "No editable fields supplied"
    if errors:
        return None, errors

    propagate = _pick(payload, "propagate_to_group", "propagateToGroup", "applyToGroup")
    return MetadataEditInput(
        delta=delta,
        propagate_to_group=propagate is True,
        expected_updated_at=_expected(payload),
    ), None


# ═══════════════════════════════════════════════════════════════════════════
# Comment / sign-off / deploy
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class CommentInput:
    body: str
    step_order: int | None = None
    expected_updated_at: Any = None


def parse_comment(payload: dict):
    errors: dict = {}
    body = _required_text(_pick(payload, "body", "text"), "body", errors)
    step_order = _pick(payload, "step_order", "stepOrder")
    step_order = None if step_order is _MISSING else _optional_int(step_order, "step_order", errors)
    if step_order is not None and step_order < 1:
        errors["step_order"] = "must be ≥ 1"
    if errors:
        return None, errors
    return CommentInput(body=body, step_order=step_order, expected_updated_at=_expected(payload)), None


@dataclass(frozen=True)
class SignOffInput:
    signature_data: str | None = None
    expected_updated_at: Any = None


def parse_sign_off(payload: dict):
    errors: dict = {}
    signature = _pick(payload, "signature_data", "signatureData")
    signature = None if signature is _MISSING else _optional_text(signature, "signature_data", errors)
    if errors:
        return None, errors
    return SignOffInput(signature_data=signature, expected_updated_at=_expected(payload)), None


@dataclass(frozen=True)
class DeployInput:
    release_version: str | None = None
    expected_updated_at: Any = None


def parse_deploy(payload: dict):
    errors: dict = {}
    version = _pick(payload, "release_version", "releaseVersion")
    version = None if version is _MISSING else _optional_text(version, "release_version", errors, max_len=60)
    if errors:
        return None, errors
    return DeployInput(release_version=version, expected_updated_at=_expected(payload)), None


# ═══════════════════════════════════════════════════════════════════════════
# Mark read (activity feed, inbox)
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class MarkReadInput:
    target_id: int | None = None
    mark_all: bool = False


def parse_mark_read(payload: dict, *id_keys: str):
    """``{<id key>: n}`` marks one target, ``{"all": true}`` marks everything in scope."""
    if payload.get("all") is True:
        return MarkReadInput(mark_all=True), None
    errors: dict = {}
    name = id_keys[0]
    raw = _pick(payload, *id_keys)
    target = None if raw is _MISSING else _optional_int(raw, name, errors)
    if errors:
        return None, errors
    if target is None:
        return None, {name: f"{name} or all=true is required"}
    return MarkReadInput(target_id=target), None


# ═══════════════════════════════════════════════════════════════════════════
# Task creation
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TaskCreateInput:
    title: str
    country_codes: tuple
    module_name: str = ""
    description: str = ""
    priority: str = "MEDIUM"
    due_date: date | None = None
    jira_ticket: str | None = None
    cr_number: str | None = None
    developer: str | None = None
    assignees: dict = field(default_factory=dict)
    steps: tuple = ()


def parse_task_create(payload: dict):
    errors: dict = {}
    title = _required_text(payload.get("title"), "title", errors, max_len=_MAX_TITLE)

    raw_countries = _pick(payload, "country_codes", "countryCodes", "countries")
    if raw_countries is _MISSING:
        single = _pick(payload, "country_code", "countryCode")
        raw_countries = [single] if isinstance(single, str) else []
    countries = []
    if not isinstance(raw_countries, list):
        errors["country_codes"] = "must be a list of country codes"
    else:
        for code in raw_countries:
            if not isinstance(code, str) or not code.strip():
                errors["country_codes"] = "country codes must be non-empty strings"
                break
            code = code.strip().upper()
            if code not in countries:
                countries.append(code)
    if not countries and "country_codes" not in errors:
        errors["country_codes"] = "At least one country is required"

    fields = {}
    for attr in ("description", "jira_ticket", "cr_number", "developer", "due_date", "priority", "module_name"):
        value = _pick(payload, *_METADATA_KEYS[attr])
        if value is _MISSING:
            continue
        fields[attr] = _parse_metadata_field(attr, value, errors)

    assignees = {}
    raw_assignees = _pick(payload, "assignees", "assigneesByCountry")
    if raw_assignees is not _MISSING and raw_assignees is not None:
        if not isinstance(raw_assignees, dict):
            errors["assignees"] = "must map country code to user id"
        else:
            for code, user_id in raw_assignees.items():
                parsed = _optional_int(user_id, f"assignees.{code}", errors)
                if parsed is not None:
                    assignees[str(code).upper()] = parsed

    raw_steps = _pick(payload, "steps")
    steps = () if raw_steps is _MISSING or raw_steps == [] else _parse_step_list(raw_steps, errors)

    if errors:
        return None, errors
    return TaskCreateInput(
        title=title,
        country_codes=tuple(countries),
        module_name=fields.get("module_name") or "",
        description=fields.get("description") or "",
        priority=fields.get("priority") or "MEDIUM",
        due_date=fields.get("due_date"),
        jira_ticket=fields.get("jira_ticket"),
        cr_number=fields.get("cr_number"),
        developer=fields.get("developer"),
        assignees=assignees,
        steps=steps,
    ), None

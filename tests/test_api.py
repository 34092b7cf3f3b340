import datetime as dt

from conftest import OTHER_PATIENT, daily_command, make_token


def _create(client, headers, body=None):
    res = client.post("/medication-commands", json=body or daily_command(), headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


def test_requires_a_valid_bearer_token(client):
    assert client.get("/medication-commands").status_code == 401

    bad = {"Authorization": f"Bearer {make_token(secret='some-other-secret-that-is-long-enough')}"}
    assert client.get("/medication-commands", headers=bad).status_code == 401


def test_create_returns_the_envelope(client, auth_headers):
    body = _create(client, auth_headers)

    assert body["success"] is True
    assert body["sideEffects"] == {"eventsCreated": 31, "eventsDeleted": 0, "notificationsQueued": 1}
    data = body["data"]
    assert data["patientId"] == "patient-1"
    assert data["status"] == {"current": "active", "isActive": True, "isPRN": False, "reason": None}
    assert data["metadata"]["version"] == 1
    assert data["schedule"]["times"] == ["08:00"]


def test_list_and_get(client, auth_headers):
    command_id = _create(client, auth_headers)["data"]["id"]

    listed = client.get("/medication-commands", headers=auth_headers).json()
    fetched = client.get(f"/medication-commands/{command_id}", headers=auth_headers).json()

    assert [c["id"] for c in listed["data"]] == [command_id]
    assert fetched["data"]["id"] == command_id


def test_errors_use_the_envelope(client, auth_headers):
    command_id = _create(client, auth_headers)["data"]["id"]

    missing = client.get("/medication-commands/nope", headers=auth_headers)
    assert missing.status_code == 404
    assert missing.json() == {
        "success": False,
        "error": {"code": "NOT_FOUND", "message": "medication command nope not found"},
    }

    other = {"Authorization": f"Bearer {make_token(OTHER_PATIENT)}"}
    forbidden = client.get(f"/medication-commands/{command_id}", headers=other)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "PERMISSION_DENIED"

    invalid = client.post("/medication-commands", json={"medication": {}}, headers=auth_headers)
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "VALIDATION_ERROR"


def test_patch_with_optimistic_locking(client, auth_headers):
    command_id = _create(client, auth_headers)["data"]["id"]
    patch = {"expectedVersion": 1, "patch": {"medication": {"dosage": "20mg"}}}

    ok = client.patch(f"/medication-commands/{command_id}", json=patch, headers=auth_headers)
    stale = client.patch(f"/medication-commands/{command_id}", json=patch, headers=auth_headers)

    assert ok.status_code == 200
    assert ok.json()["data"]["metadata"]["version"] == 2
    assert stale.status_code == 409
    assert stale.json()["error"]["details"] == {"currentVersion": 2, "expectedVersion": 1}


def test_dose_actions_and_occurrence(client, auth_headers, clock):
    command_id = _create(client, auth_headers)["data"]["id"]
    clock.set(dt.datetime(2025, 1, 6, 8, 5))
    base = f"/medication-commands/{command_id}"

    snoozed = client.post(
        f"{base}/snooze", json={"scheduledDateTime": "2025-01-06T08:00:00", "minutes": 10}, headers=auth_headers
    )
    taken = client.post(f"{base}/take", json={"scheduledDateTime": "2025-01-06T08:00:00"}, headers=auth_headers)
    again = client.post(f"{base}/take", json={"scheduledDateTime": "2025-01-06T08:00:00"}, headers=auth_headers)
    skipped = client.post(
        f"{base}/skip", json={"scheduledDateTime": "2025-01-07T08:00:00", "reason": "ran_out"}, headers=auth_headers
    )
    occurrence = client.get(
        f"{base}/occurrence", params={"scheduledDateTime": "2025-01-06T08:00:00"}, headers=auth_headers
    )

    assert snoozed.json()["data"]["details"]["snoozedUntil"] == "2025-01-06T08:15:00"
    assert taken.json()["data"]["eventType"] == "dose_taken"
    assert again.status_code == 422
    assert skipped.json()["data"]["details"] == {"reason": "ran_out"}
    assert occurrence.json()["data"]["status"] == "dose_taken"


def test_timezone_aware_input_is_converted_to_local_time(client, auth_headers, clock):
    command_id = _create(client, auth_headers)["data"]["id"]
    clock.set(dt.datetime(2025, 1, 6, 8, 5))

    # 23:00 UTC on Jan 5 is 08:00 on Jan 6 in Seoul
    res = client.post(
        f"/medication-commands/{command_id}/take",
        json={"scheduledDateTime": "2025-01-05T23:00:00Z"},
        headers=auth_headers,
    )

    assert res.status_code == 200, res.text
    assert res.json()["data"]["scheduledDateTime"] == "2025-01-06T08:00:00"


def test_status_changes_and_delete(client, auth_headers):
    command_id = _create(client, auth_headers)["data"]["id"]
    base = f"/medication-commands/{command_id}"

    paused = client.post(f"{base}/pause", json={"reason": "travel"}, headers=auth_headers)
    resumed = client.post(f"{base}/resume", headers=auth_headers)
    deleted = client.delete(base, params={"hardDelete": "true"}, headers=auth_headers)

    assert paused.json()["data"]["status"]["reason"] == "travel"
    assert resumed.json()["data"]["status"]["current"] == "active"
    assert deleted.json()["data"] == {"commandDeleted": True, "eventsDeleted": 33, "totalItemsDeleted": 34}
    assert client.get(base, headers=auth_headers).status_code == 404


def test_event_query_and_adherence(client, auth_headers):
    command_id = _create(client, auth_headers)["data"]["id"]

    events = client.get(
        "/medication-events",
        params={"commandId": command_id, "eventType": ["command_created"]},
        headers=auth_headers,
    ).json()
    adherence = client.get(
        "/medication-events/adherence",
        params={"start": "2025-01-01T00:00:00", "end": "2025-01-31T00:00:00"},
        headers=auth_headers,
    ).json()

    assert [e["eventType"] for e in events["data"]] == ["command_created"]
    assert events["data"][0]["eventSequenceNumber"] == 1
    assert adherence["data"]["totalScheduled"] == 0
    assert adherence["data"]["adherenceRate"] == 0.0


def test_grace_period_settings(client, auth_headers):
    defaults = client.get("/grace-periods", headers=auth_headers).json()["data"]
    assert defaults["defaultMatrix"]["critical"]["morning"] == 15
    assert defaults["weekendMultiplier"] == 1.5

    defaults["patientOverrides"] = {"critical": {"morning": 25}}
    saved = client.put("/grace-periods", json=defaults, headers=auth_headers)
    assert saved.status_code == 200

    preview = client.post(
        "/grace-periods/preview",
        json={"medicationType": "critical", "scheduledDateTime": "2025-01-11T08:00:00"},
        headers=auth_headers,
    ).json()["data"]
    assert preview["gracePeriodMinutes"] == 37
    assert preview["appliedRules"] == ["default_critical_morning", "patient_override", "weekend_multiplier"]

    defaults["weekendMultiplier"] = 12
    rejected = client.put("/grace-periods", json=defaults, headers=auth_headers)
    assert rejected.status_code == 422
    assert rejected.json()["error"]["details"]["errors"]


def test_push_token_registration(client, auth_headers):
    registered = client.post("/fcm/token", json={"token": "device-token-123", "platform": "ios"}, headers=auth_headers)
    removed = client.delete("/fcm/token", params={"token": "device-token-123"}, headers=auth_headers)
    removed_again = client.delete("/fcm/token", params={"token": "device-token-123"}, headers=auth_headers)
    unknown_platform = client.post("/fcm/token", json={"token": "device-token-456", "platform": "tv"}, headers=auth_headers)

    assert registered.status_code == 201
    assert registered.json()["data"] == {"platform": "ios", "isActive": True}
    assert removed.json() == {"success": True, "data": {"deactivated": 1}}
    assert removed_again.json()["data"] == {"deactivated": 0}
    assert unknown_platform.status_code == 422

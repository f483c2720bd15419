from fastapi import status
from data.database import Assignment, Event, Variant

HEADERS = {"User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15"}
MOBILE_HEADERS = {"User-Agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148"}


def _variant_ids(experiment):
    control = next(v["id"] for v in experiment["variants"] if v["is_control"])
    variant_b = next(v["id"] for v in experiment["variants"] if not v["is_control"])
    return control, variant_b


def _impression(client, experiment_id, variant_id, user_id, headers=HEADERS, **extra):
    payload = {"experiment_id": experiment_id, "variant_id": variant_id, "user_id": user_id, **extra}
    return client.post("/events/impression", json=payload, headers=headers)


def _conversion(client, experiment_id, variant_id, order_value, **extra):
    payload = {"experiment_id": experiment_id, "variant_id": variant_id, "order_value": order_value, **extra}
    return client.post("/events/conversion", json=payload)


# --- Experiments ---

def test_create_experiment(client, db_session, experiment_payload):
    response = client.post("/experiments", json=experiment_payload(name="Homepage Test"))
    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert data["name"] == "Homepage Test"
    assert data["status"] == "draft"
    assert data["started_at"] is None

    experiment_id = data["id"]
    variants = db_session.query(Variant).filter(Variant.experiment_id == experiment_id).all()
    assert len(variants) == 2
    assert {v.name for v in variants} == {v["name"] for v in data["variants"]}
    assert data["variants"][1]["config"]["parameters"] == {"color": "green"}


def test_create_experiment_rejects_bad_weights(client, experiment_payload):
    response = client.post("/experiments", json=experiment_payload(weights=(60, 50)))
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_create_experiment_requires_one_control(client, experiment_payload):
    payload = experiment_payload()
    payload["variants"][0]["is_control"] = False
    response = client.post("/experiments", json=payload)
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_start_and_get_experiment(client, experiment_payload):
    created = client.post("/experiments", json=experiment_payload()).json()

    started = client.post(f"/experiments/{created['id']}/start")
    assert started.status_code == status.HTTP_200_OK
    assert started.json()["status"] == "running"
    assert started.json()["started_at"] is not None

    # Starting twice keeps the original start time
    again = client.post(f"/experiments/{created['id']}/start")
    assert again.json()["started_at"] == started.json()["started_at"]

    fetched = client.get(f"/experiments/{created['id']}")
    assert fetched.status_code == status.HTTP_200_OK
    assert fetched.json()["status"] == "running"


def test_start_rejects_weights_changed_after_creation(client, db_session, experiment_payload):
    created = client.post("/experiments", json=experiment_payload()).json()
    variant = db_session.query(Variant).filter(Variant.experiment_id == created["id"]).first()
    variant.weight = 70
    db_session.commit()

    response = client.post(f"/experiments/{created['id']}/start")
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert client.get(f"/experiments/{created['id']}").json()["status"] == "draft"


def test_active_experiments_lists_running_only(client, experiment_payload):
    draft = client.post("/experiments", json=experiment_payload(name="Still Drafting")).json()
    running = client.post("/experiments", json=experiment_payload(name="Live Banner")).json()
    client.post(f"/experiments/{running['id']}/start")

    response = client.get("/experiments/active")
    assert response.status_code == status.HTTP_200_OK
    assert "max-age=60" in response.headers["Cache-Control"]

    listed = {e["id"]: e for e in response.json()["experiments"]}
    assert running["id"] in listed
    assert draft["id"] not in listed
    assert all(e["status"] == "running" for e in listed.values())
    assert [v["weight"] for v in listed[running["id"]]["variants"]] == [50, 50]
    assert "targeting_rules" in listed[running["id"]]


def test_get_unknown_experiment(client):
    response = client.get("/experiments/999999")
    assert response.status_code == status.HTTP_404_NOT_FOUND


# --- Impressions and assignments ---

def test_first_impression_creates_assignment(client, experiment, db_session):
    control, variant_b = _variant_ids(experiment)

    first = _impression(client, experiment["id"], variant_b, "user-1", headers=MOBILE_HEADERS, country="US")
    assert first.status_code == status.HTTP_200_OK
    assert first.json() == {"success": True, "is_new_assignment": True, "device_type": "mobile",
                            "variant_id": variant_b}

    # A later impression for a different variant is counted against the assigned one
    repeat = _impression(client, experiment["id"], control, "user-1")
    assert repeat.json()["is_new_assignment"] is False
    assert repeat.json()["variant_id"] == variant_b

    rows = db_session.query(Assignment).filter(Assignment.user_id == "user-1").all()
    assert len(rows) == 1
    assert rows[0].device_type == "mobile"
    assert rows[0].country == "US"

    assignment = client.get(f"/experiments/{experiment['id']}/assignment/user-1")
    assert assignment.status_code == status.HTTP_200_OK
    assert assignment.json()["variant_id"] == variant_b
    assert assignment.json()["is_new_visitor"] is True


def test_assignment_missing(client, experiment):
    response = client.get(f"/experiments/{experiment['id']}/assignment/nobody")
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_impression_unknown_variant(client, experiment):
    response = _impression(client, experiment["id"], 999999, "user-2")
    assert response.status_code == status.HTTP_404_NOT_FOUND


# --- Conversions and clicks ---

def test_conversion_is_queued_and_counted(client, experiment, db_session):
    control, _ = _variant_ids(experiment)
    _impression(client, experiment["id"], control, "buyer-1")

    response = _conversion(client, experiment["id"], control, "49.99", user_id="buyer-1", order_id="1001")
    assert response.status_code == status.HTTP_202_ACCEPTED
    assert response.json()["status"] == "accepted"

    stats = client.get(f"/experiments/{experiment['id']}/stats").json()
    control_stats = stats["summary"]["variants"][0]
    assert control_stats["orders"] == 1
    assert control_stats["revenue"] == 49.99

    audit = db_session.query(Event).filter(Event.experiment_id == experiment["id"]).all()
    assert [(e.type, e.order_id, e.order_value_cents) for e in audit] == [("conversion", "1001", 4999)]


def test_conversion_rejects_negative_value(client, experiment):
    control, _ = _variant_ids(experiment)
    response = _conversion(client, experiment["id"], control, "-5.00")
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


def test_click_is_counted(client, experiment):
    _, variant_b = _variant_ids(experiment)
    _impression(client, experiment["id"], variant_b, "clicker-1")

    response = client.post("/events/click", json={"experiment_id": experiment["id"], "variant_id": variant_b,
                                                   "user_id": "clicker-1"})
    assert response.status_code == status.HTTP_202_ACCEPTED

    stats = client.get(f"/experiments/{experiment['id']}/stats").json()
    variant_stats = stats["summary"]["variants"][0]
    assert variant_stats["clicks"] == 1
    assert variant_stats["impressions"] == 1
    assert variant_stats["click_through_rate"] == 100.0


# --- Order webhook ---

def test_order_webhook_records_conversion(client, experiment):
    control, _ = _variant_ids(experiment)
    order = {
        "id": 5001,
        "total_price": "120.50",
        "currency": "USD",
        "note_attributes": [
            {"name": "ab_test_user_id", "value": "shopper-1"},
            {"name": "ab_test_experiment_id", "value": str(experiment["id"])},
            {"name": "ab_test_variant_id", "value": str(control)},
        ],
    }
    response = client.post("/webhooks/orders", json=order)
    assert response.status_code == status.HTTP_202_ACCEPTED

    stats = client.get(f"/experiments/{experiment['id']}/stats").json()
    assert stats["summary"]["total_orders"] == 1
    assert stats["summary"]["total_revenue"] == 120.5


def test_order_webhook_without_experiment_data(client):
    response = client.post("/webhooks/orders", json={"id": 5002, "total_price": "10.00"})
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["success"] is True


def test_order_webhook_unknown_experiment_is_acknowledged(client):
    order = {
        "id": 5003,
        "total_price": "10.00",
        "customer": {"id": 77},
        "note_attributes": [
            {"name": "ab_test_experiment_id", "value": "999999"},
            {"name": "ab_test_variant_id", "value": "1"},
        ],
    }
    response = client.post("/webhooks/orders", json=order)
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["success"] is True


# --- Statistics ---

def test_stats_end_to_end(client, experiment):
    control, variant_b = _variant_ids(experiment)
    for i in range(10):
        _impression(client, experiment["id"], control, f"c-{i}")
        _impression(client, experiment["id"], variant_b, f"b-{i}", headers=MOBILE_HEADERS)
    # A returning user counts once
    _impression(client, experiment["id"], control, "c-0")

    _conversion(client, experiment["id"], control, "100.00", user_id="c-0")
    for i in range(2):
        _conversion(client, experiment["id"], variant_b, "110.00", user_id=f"b-{i}")

    response = client.get(f"/experiments/{experiment['id']}/stats")
    assert response.status_code == status.HTTP_200_OK
    stats = response.json()
    summary = stats["summary"]

    assert summary["status"] == "running"
    assert summary["total_visitors"] == 20
    assert summary["total_orders"] == 3
    assert summary["control_conversion_rate"] == 10.0
    assert summary["winning_variant_id"] == variant_b
    assert round(summary["winning_variant_improvement"], 6) == 100.0

    control_stats, variant_stats = summary["variants"]
    assert control_stats["impressions"] == 11
    assert control_stats["visitors"] == 10
    assert control_stats["p_value"] is None
    assert variant_stats["conversion_rate"] == 20.0
    assert 0.0 < variant_stats["p_value"] <= 1.0

    assert len(stats["time_series"]) == 2
    assert [v["variant_id"] for v in stats["segmentData"]["desktop"]] == [control]
    assert [v["variant_id"] for v in stats["segmentData"]["mobile"]] == [variant_b]


def test_stats_empty_experiment(client, experiment):
    response = client.get(f"/experiments/{experiment['id']}/stats")
    assert response.status_code == status.HTTP_200_OK
    stats = response.json()
    assert stats["summary"]["total_visitors"] == 0
    assert stats["summary"]["variants"] == []
    assert stats["summary"]["winning_variant_id"] is None
    assert stats["time_series"] == []
    assert stats["segmentData"] is None


def test_stats_bad_date_range(client, experiment):
    response = client.get(f"/experiments/{experiment['id']}/stats", params={"start_date": "2024-13-01"})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["status"] == "failed"

    response = client.get(f"/experiments/{experiment['id']}/stats",
                          params={"start_date": "2024-02-01", "end_date": "2024-01-01"})
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_stats_date_range_filters(client, experiment):
    control, _ = _variant_ids(experiment)
    _impression(client, experiment["id"], control, "dated-1", date="2024-01-15")

    inside = client.get(f"/experiments/{experiment['id']}/stats",
                        params={"start_date": "2024-01-15", "end_date": "2024-01-15"}).json()
    outside = client.get(f"/experiments/{experiment['id']}/stats",
                         params={"start_date": "2024-01-16"}).json()
    assert inside["summary"]["total_visitors"] == 1
    assert outside["summary"]["total_visitors"] == 0


def test_stats_unknown_experiment(client):
    response = client.get("/experiments/999999/stats")
    assert response.status_code == status.HTTP_404_NOT_FOUND



# --- Data audit ---

def test_audit_consistent_experiment(client, experiment):
    control, variant_b = _variant_ids(experiment)
    for i in range(4):
        _impression(client, experiment["id"], control, f"audit-c-{i}")
        _impression(client, experiment["id"], variant_b, f"audit-b-{i}", headers=MOBILE_HEADERS)
    _conversion(client, experiment["id"], control, "15.00", user_id="audit-c-0")

    response = client.get(f"/experiments/{experiment['id']}/audit")
    assert response.status_code == status.HTTP_200_OK
    report = response.json()
    assert report["experiment_id"] == experiment["id"]
    assert report["overall_status"] == "pass"
    assert report["summary"] == {"total_checks": 5, "passed": 5, "warnings": 0, "failed": 0}
    checks = {c["name"]: c for c in report["checks"]}
    assert checks["Total Visitors Consistency"]["expected"] == 8
    assert checks["Conversion Count Consistency"]["actual"] == 1


def test_audit_flags_counter_drift(client, experiment, db_session):
    control, variant_b = _variant_ids(experiment)
    _impression(client, experiment["id"], control, "drift-1")
    _impression(client, experiment["id"], variant_b, "drift-2")
    # An assignment whose counter increment never happened
    db_session.add(Assignment(user_id="drift-3", experiment_id=experiment["id"], variant_id=control,
                              assignment_method="hash", is_new_visitor=True, device_type="desktop"))
    db_session.commit()

    report = client.get(f"/experiments/{experiment['id']}/audit").json()
    checks = {c["name"]: c for c in report["checks"]}
    assert checks["Total Visitors Consistency"]["status"] == "warning"
    assert checks["Total Visitors Consistency"]["discrepancy"] == 1
    assert report["overall_status"] in ("warning", "fail")


def test_audit_unknown_experiment(client):
    response = client.get("/experiments/999999/audit")
    assert response.status_code == status.HTTP_404_NOT_FOUND

# --- Ambient ---

def test_health_and_request_id(client):
    response = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "healthy"}
    assert response.headers["X-Request-ID"] == "abc123"

from __future__ import annotations

from decimal import Decimal

from fastapi.testclient import TestClient

from ehrm.main import app

BOOTSTRAP_TOKEN = "test-bootstrap-token"
PASSWORD = "correct-horse-battery"


def bootstrap_admin(client: TestClient, email: str = "admin@example.com", password: str = "admin-password-123"):
    return client.post(
        "/auth/bootstrap",
        headers={"X-Bootstrap-Token": BOOTSTRAP_TOKEN},
        json={"email": email, "password": password},
    )


def login(client: TestClient, email: str, password: str):
    return client.post("/auth/login", json={"email": email, "password": password})


def create_user(admin: TestClient, email: str, role: str) -> int:
    response = admin.post(
        "/api/admin/users",
        json={"email": email, "temporary_password": PASSWORD, "name": email.split("@")[0], "role": role},
    )
    assert response.status_code == 201
    return response.json()["id"]


def client_for(email: str) -> TestClient:
    client = TestClient(app)
    assert login(client, email, PASSWORD).status_code == 200
    return client


def setup_world() -> dict:
    admin = TestClient(app)
    assert bootstrap_admin(admin).status_code == 201
    ids = {
        "employee_id": create_user(admin, "employee@example.com", "EMPLOYEE"),
        "colleague_id": create_user(admin, "colleague@example.com", "EMPLOYEE"),
        "supervisor_id": create_user(admin, "supervisor@example.com", "SUPERVISOR"),
        "director_id": create_user(admin, "director@example.com", "DIRECTOR"),
    }
    return {
        "admin": admin,
        "employee": client_for("employee@example.com"),
        "colleague": client_for("colleague@example.com"),
        "supervisor": client_for("supervisor@example.com"),
        "director": client_for("director@example.com"),
        **ids,
    }


def file_payment(world: dict, kind: str = "payment", amount: str = "150000") -> dict:
    response = world["employee"].post(
        f"/api/submissions/{kind}",
        json={
            "amount": amount,
            "payment_method": "transfer",
            "reason": "Client dinner",
            "approvals": [{"level": 1, "approver_user_id": world["supervisor_id"]}],
        },
    )
    assert response.status_code == 201
    return response.json()


def test_payment_is_created_with_amount_and_method():
    world = setup_world()

    payment = file_payment(world)

    assert payment["kind"] == "payment"
    assert payment["status"] == "pending"
    assert Decimal(payment["amount"]) == Decimal("150000")
    assert payment["payment_method"] == "transfer"
    assert payment["user_id"] == world["employee_id"]


def test_amount_must_be_positive():
    world = setup_world()

    for amount in ("0", "-10"):
        response = world["employee"].post(
            "/api/submissions/reimbursement",
            json={"amount": amount, "approvals": [{"level": 1, "approver_user_id": world["supervisor_id"]}]},
        )
        assert response.status_code == 400

    missing = world["employee"].post(
        "/api/submissions/reimbursement",
        json={"approvals": [{"level": 1, "approver_user_id": world["supervisor_id"]}]},
    )
    assert missing.status_code == 400


def test_director_can_decide_any_financial_slot_and_attach_proof():
    world = setup_world()
    payment = file_payment(world, kind="pocket-money")
    slot_id = payment["approvals"][0]["id"]

    decided = world["director"].patch(
        f"/api/submissions/pocket_money/approvals/{slot_id}",
        json={"decision": "approved", "proof_url": "https://files.example.com/transfer-42.pdf"},
    )

    assert decided.status_code == 200
    body = decided.json()
    assert body["slot"]["proof_url"] == "https://files.example.com/transfer-42.pdf"
    assert body["submission"]["status"] == "approved"
    assert body["shift_adjustments"] == []

    events = world["employee"].get("/api/notifications").json()
    decided_events = [row for row in events if row["event_type"] == "POCKET_MONEY_APPROVAL_DECIDED"]
    assert len(decided_events) == 1
    assert decided_events[0]["related_id"] == payment["id"]
    assert decided_events[0]["payload"]["deeplink"] == f"/submissions/pocket_money/{payment['id']}"


def test_other_employees_cannot_decide_or_view():
    world = setup_world()
    payment = file_payment(world)
    slot_id = payment["approvals"][0]["id"]

    decided = world["colleague"].patch(f"/api/submissions/payment/approvals/{slot_id}", json={"decision": "approved"})
    assert decided.status_code == 403

    viewed = world["colleague"].get(f"/api/submissions/payment/{payment['id']}")
    assert viewed.status_code == 403

    assert world["supervisor"].get(f"/api/submissions/payment/{payment['id']}").status_code == 200


def test_wrong_kind_on_decision_route_is_not_found():
    world = setup_world()
    payment = file_payment(world)

    response = world["supervisor"].patch(
        f"/api/submissions/reimbursement/approvals/{payment['approvals'][0]['id']}",
        json={"decision": "approved"},
    )

    assert response.status_code == 404


def test_invalid_decision_value_is_rejected():
    world = setup_world()
    payment = file_payment(world)

    response = world["supervisor"].patch(
        f"/api/submissions/payment/approvals/{payment['approvals'][0]['id']}",
        json={"decision": "maybe"},
    )

    assert response.status_code == 422


def test_admin_files_on_behalf_of_an_employee_but_employees_cannot():
    world = setup_world()
    chain = [{"level": 1, "approver_user_id": world["director_id"]}]

    on_behalf = world["supervisor"].post(
        "/api/submissions/reimbursement",
        json={"user_id": world["employee_id"], "amount": "75000", "approvals": chain},
    )
    assert on_behalf.status_code == 201
    assert on_behalf.json()["user_id"] == world["employee_id"]

    refused = world["colleague"].post(
        "/api/submissions/reimbursement",
        json={"user_id": world["employee_id"], "amount": "75000", "approvals": chain},
    )
    assert refused.status_code == 403


def test_listing_is_scoped_and_filtered():
    world = setup_world()
    first = file_payment(world)
    second = file_payment(world, amount="20000")
    world["colleague"].post(
        "/api/submissions/payment",
        json={"amount": "5000", "approvals": [{"level": 1, "approver_user_id": world["supervisor_id"]}]},
    )
    world["supervisor"].patch(
        f"/api/submissions/payment/approvals/{first['approvals'][0]['id']}",
        json={"decision": "approved"},
    )

    own = world["employee"].get("/api/submissions/payment").json()
    assert {row["id"] for row in own} == {first["id"], second["id"]}

    approved = world["employee"].get("/api/submissions/payment", params={"status": "approved"}).json()
    assert [row["id"] for row in approved] == [first["id"]]

    everyone = world["admin"].get("/api/submissions/payment").json()
    assert len(everyone) == 3
    filtered = world["admin"].get("/api/submissions/payment", params={"user_id": world["colleague_id"]}).json()
    assert [row["user_id"] for row in filtered] == [world["colleague_id"]]


def test_owner_can_delete_pending_payment():
    world = setup_world()
    payment = file_payment(world)

    assert world["colleague"].delete(f"/api/submissions/payment/{payment['id']}").status_code == 403
    assert world["employee"].delete(f"/api/submissions/payment/{payment['id']}").status_code == 200
    assert world["employee"].get("/api/submissions/payment").json() == []
    assert world["supervisor"].get("/api/approvals/pending").json() == []

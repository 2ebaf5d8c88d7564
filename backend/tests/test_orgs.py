from fastapi import status
from fastapi.testclient import TestClient

from authcore.models.organization import Membership, MembershipRole
from authcore.models.user import User

PASSWORD = "password123"


def signed_in(client, email: str) -> dict:
    resp = client.post("/auth/signup", json={"email": email, "password": PASSWORD})
    assert resp.status_code == status.HTTP_201_CREATED
    token = client.get("/auth/csrf").json()["csrfToken"]
    return {"x-csrf-token": token}


def test_signup_provisions_owned_organization(client):
    signed_in(client, "owner@example.com")
    resp = client.get("/orgs")
    assert resp.status_code == status.HTTP_200_OK
    orgs = resp.json()["organizations"]
    assert len(orgs) == 1
    assert orgs[0]["name"] == "owner@example.com's Org"
    assert orgs[0]["role"] == "OWNER"


def test_orgs_require_authentication(client):
    assert client.get("/orgs").status_code == status.HTTP_401_UNAUTHORIZED


def test_owner_can_rename(client):
    headers = signed_in(client, "rename@example.com")
    org_id = client.get("/orgs").json()["organizations"][0]["id"]

    resp = client.patch(f"/orgs/{org_id}", json={"name": "  Acme  "}, headers=headers)
    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["organization"]["name"] == "Acme"
    assert client.get("/orgs").json()["organizations"][0]["name"] == "Acme"


def test_non_member_gets_not_found(client):
    signed_in(client, "alice@example.com")
    org_id = client.get("/orgs").json()["organizations"][0]["id"]

    bob = TestClient(client.app)
    headers = signed_in(bob, "bob@example.com")
    resp = bob.patch(f"/orgs/{org_id}", json={"name": "Hijacked"}, headers=headers)
    assert resp.status_code == status.HTTP_404_NOT_FOUND
    assert resp.json()["detail"] == "Organization not found"


def test_member_role_is_forbidden(client, db_session):
    signed_in(client, "lead@example.com")
    org_id = client.get("/orgs").json()["organizations"][0]["id"]

    member = TestClient(client.app)
    headers = signed_in(member, "member@example.com")
    member_id = db_session.query(User).filter(User.email == "member@example.com").one().id
    db_session.add(Membership(user_id=member_id, organization_id=org_id, role=MembershipRole.MEMBER))
    db_session.commit()

    resp = member.patch(f"/orgs/{org_id}", json={"name": "Nope"}, headers=headers)
    assert resp.status_code == status.HTTP_403_FORBIDDEN
    assert resp.json()["detail"] == "Insufficient permissions"
    assert len(member.get("/orgs").json()["organizations"]) == 2

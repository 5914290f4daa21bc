"""
test_properties.py

Property creation, validation and read endpoints.

Run:
    pytest test_properties.py -v
"""
from datetime import datetime, timezone

import pytest
from bson import ObjectId


class TestCreateProperty:
    def test_target_amount_computed(self, client, db, project_id, alice):
        doc = db["property"].find_one({"_id": ObjectId(project_id)})
        assert doc["expected_members"] == 100
        assert doc["per_member_cost"] == 5000
        assert doc["target_amount"] == 500000
        assert doc["status"] == "FUNDING"
        assert doc["members"] == []
        assert doc["chat_messages"] == []

    def test_creator_is_sole_admin(self, client, db, project_id, alice):
        doc = db["property"].find_one({"_id": ObjectId(project_id)})
        assert doc["created_by"] == {"id": alice["id"], "name": "Alice"}
        assert doc["admins"] == [{"id": alice["id"], "name": "Alice"}]

    def test_numeric_strings_coerced(self, client, db, alice, headers_for, valid_property):
        valid_property.update(expected_members="4", per_member_cost="2500.5")
        resp = client.post("/properties", json=valid_property, headers=headers_for(alice))
        assert resp.status_code == 201
        doc = db["property"].find_one({"_id": ObjectId(resp.json()["projectId"])})
        assert doc["target_amount"] == 4 * 2500.5

    @pytest.mark.parametrize(
        "field,value",
        [
            ("expected_members", 1),
            ("expected_members", 0),
            ("per_member_cost", 0),
            ("per_member_cost", -10),
            ("images", []),
            ("title", ""),
        ],
    )
    def test_invalid_input_rejected(self, client, db, alice, headers_for, valid_property, field, value):
        valid_property[field] = value
        resp = client.post("/properties", json=valid_property, headers=headers_for(alice))
        assert resp.status_code == 400
        assert db["property"].count_documents({}) == 0

    def test_overflowing_target_rejected(self, client, db, alice, headers_for, valid_property):
        valid_property.update(expected_members=100, per_member_cost=1e308)
        resp = client.post("/properties", json=valid_property, headers=headers_for(alice))
        assert resp.status_code == 400
        assert db["property"].count_documents({}) == 0
        assert client.get("/properties").status_code == 200

    def test_members_beyond_stored_int_range_rejected(self, client, db, alice, headers_for, valid_property):
        valid_property["expected_members"] = 10**30
        resp = client.post("/properties", json=valid_property, headers=headers_for(alice))
        assert resp.status_code == 400
        assert db["property"].count_documents({}) == 0

    def test_missing_field_rejected(self, client, db, alice, headers_for, valid_property):
        del valid_property["location"]
        resp = client.post("/properties", json=valid_property, headers=headers_for(alice))
        assert resp.status_code == 400
        assert db["property"].count_documents({}) == 0

    def test_requires_auth(self, client, db, valid_property):
        resp = client.post("/properties", json=valid_property)
        assert resp.status_code == 401
        assert db["property"].count_documents({}) == 0


class TestReadProperties:
    def test_list_newest_first(self, client, db, alice, headers_for, valid_property):
        first = client.post("/properties", json=valid_property, headers=headers_for(alice)).json()["projectId"]
        valid_property["title"] = "Hillside cabin"
        second = client.post("/properties", json=valid_property, headers=headers_for(alice)).json()["projectId"]
        # stored timestamps have millisecond precision; make the order unambiguous
        db["property"].update_one(
            {"_id": ObjectId(first)},
            {"$set": {"created_at": datetime(2020, 1, 1, tzinfo=timezone.utc)}},
        )

        resp = client.get("/properties")
        assert resp.status_code == 200
        assert [p["id"] for p in resp.json()] == [second, first]

    def test_get_by_id(self, client, project_id):
        resp = client.get(f"/properties/{project_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == project_id
        assert body["title"] == "Lakeside duplex"

    def test_get_bad_id(self, client):
        assert client.get("/properties/not-an-id").status_code == 400

    def test_get_unknown_id(self, client):
        assert client.get(f"/properties/{ObjectId()}").status_code == 404


class TestMyProjects:
    def test_lists_administered_and_joined(self, client, alice, bob, headers_for, valid_property):
        alice_project = client.post("/properties", json=valid_property, headers=headers_for(alice)).json()["projectId"]
        bob_project = client.post("/properties", json=valid_property, headers=headers_for(bob)).json()["projectId"]
        client.post("/properties", json=valid_property, headers=headers_for(bob))
        client.post(f"/properties/{bob_project}/join", headers=headers_for(alice))

        resp = client.get("/my-projects", headers=headers_for(alice))
        assert resp.status_code == 200
        assert sorted(p["id"] for p in resp.json()) == sorted([alice_project, bob_project])

    def test_requires_auth(self, client):
        assert client.get("/my-projects").status_code == 401

from coachmarket.models import Capability, SystemRole


def _update(client, **body):
    return client.post("/users/role", json=body)


class TestProfile:
    def test_me(self, client, auth_as, coach):
        auth_as(coach)
        data = client.get("/users/me").json()["data"]
        assert data["ulid"] == coach.ulid
        assert data["is_coach"] is True

    def test_my_role(self, client, auth_as, mentee):
        auth_as(mentee)
        assert client.get("/users/me/role").json()["data"] == {
            "system_role": SystemRole.USER,
            "capabilities": [Capability.MENTEE],
        }


class TestRoleUpdates:
    def test_requires_role_or_capability(self, client, auth_as, mentee):
        auth_as(mentee)
        resp = _update(client, action="add")
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Either role or capability is required"

    def test_requires_valid_action(self, client, auth_as, mentee):
        auth_as(mentee)
        resp = _update(client, capability=Capability.MENTEE, action="toggle")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_capability(self, client, auth_as, mentee):
        auth_as(mentee)
        assert _update(client, capability="WIZARD", action="add").status_code == 400

    def test_user_cannot_self_promote_to_coach(self, client, auth_as, mentee):
        auth_as(mentee)
        resp = _update(client, capability=Capability.COACH, action="add")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_user_cannot_grant_system_role(self, client, auth_as, mentee):
        auth_as(mentee)
        assert _update(client, role=SystemRole.SYSTEM_OWNER, action="add").status_code == 403

    def test_user_can_drop_own_capability(self, client, auth_as, make_user):
        user = auth_as(make_user(capabilities=(Capability.COACH, Capability.MENTEE)))
        data = _update(client, capability=Capability.COACH, action="remove").json()["data"]
        assert data["capabilities"] == [Capability.MENTEE]
        assert data["is_coach"] is False
        assert data["ulid"] == user.ulid

    def test_owner_grants_coach_to_another_user(self, client, auth_as, make_user, mentee):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))

        data = _update(client, capability=Capability.COACH, action="add", user_ulid=mentee.ulid).json()["data"]

        assert data["ulid"] == mentee.ulid
        assert data["capabilities"] == [Capability.MENTEE, Capability.COACH]
        assert data["is_coach"] is True

    def test_capabilities_stay_unique(self, client, auth_as, make_user, mentee):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))
        _update(client, capability=Capability.MENTEE, action="add", user_ulid=mentee.ulid)
        data = _update(client, capability=Capability.MENTEE, action="add", user_ulid=mentee.ulid).json()["data"]
        assert data["capabilities"] == [Capability.MENTEE]

    def test_removing_role_resets_to_user(self, client, auth_as, make_user):
        owner = auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))
        moderator = make_user(system_role=SystemRole.SYSTEM_MODERATOR)

        data = _update(
            client, role=SystemRole.SYSTEM_MODERATOR, action="remove", user_ulid=moderator.ulid
        ).json()["data"]

        assert data["system_role"] == SystemRole.USER
        assert owner.system_role == SystemRole.SYSTEM_OWNER

    def test_removing_role_not_held(self, client, db, auth_as, make_user, mentee):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))

        resp = _update(client, role=SystemRole.SYSTEM_MODERATOR, action="remove", user_ulid=mentee.ulid)

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "ROLE_NOT_HELD"
        db.refresh(mentee)
        assert mentee.system_role == SystemRole.USER

    def test_last_owner_cannot_remove_own_role(self, client, db, auth_as, make_user):
        owner = auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))

        resp = _update(client, role=SystemRole.SYSTEM_OWNER, action="remove")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "LAST_OWNER"
        db.refresh(owner)
        assert owner.system_role == SystemRole.SYSTEM_OWNER

    def test_last_owner_cannot_be_demoted(self, client, auth_as, make_user):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))
        resp = _update(client, role=SystemRole.SYSTEM_MODERATOR, action="add")
        assert resp.status_code == 409

    def test_owner_removed_when_another_remains(self, client, auth_as, make_user):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))
        other = make_user(system_role=SystemRole.SYSTEM_OWNER)

        resp = _update(client, role=SystemRole.SYSTEM_OWNER, action="remove", user_ulid=other.ulid)

        assert resp.status_code == 200
        assert resp.json()["data"]["system_role"] == SystemRole.USER

    def test_unknown_target(self, client, auth_as, make_user):
        auth_as(make_user(system_role=SystemRole.SYSTEM_OWNER))
        resp = _update(client, capability=Capability.COACH, action="add", user_ulid="0" * 26)
        assert resp.status_code == 404


class TestAdminUsers:
    def test_regular_user_forbidden(self, client, auth_as, mentee):
        auth_as(mentee)
        resp = client.get("/admin/users")
        assert resp.status_code == 403
        assert resp.json()["error"] == {"code": "FORBIDDEN", "message": "Insufficient permissions"}

    def test_moderator_lists_users(self, client, auth_as, make_user, mentee):
        auth_as(make_user(system_role=SystemRole.SYSTEM_MODERATOR))
        assert len(client.get("/admin/users").json()["data"]) == 2

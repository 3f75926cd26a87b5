"""Tests for the role-claim to local-role mapper."""

from oidcauth.auth.claims_mapper import RoleDiff, claimed_groups, sync_roles
from oidcauth.auth.jwt import IdToken
from oidcauth.services.protocols import Role

ROLES = [Role(id="1", shortname="A"), Role(id="2", shortname="B"), Role(id="3", shortname="C")]


def _token(**claims) -> IdToken:
    return IdToken(raw="", header={}, claims=claims)


def _names(roles: list[Role]) -> list[str]:
    return [r.shortname for r in roles]


class TestClaimedGroups:
    def test_list_of_strings(self):
        assert claimed_groups(["a", "b"]) == {"a", "b"}

    def test_missing(self):
        assert claimed_groups(None) == frozenset()

    def test_scalar_string(self):
        assert claimed_groups("a") == frozenset()

    def test_mixed_types(self):
        assert claimed_groups(["a", 1]) == frozenset()


class TestSyncRoles:
    def test_assigns_matches_and_unassigns_stale(self):
        diff = sync_roles(_token(group=["A", "B"]), ROLES, "group", assigned_by_plugin=["C"])

        assert _names(diff.assign) == ["A", "B"]
        assert _names(diff.unassign) == ["C"]

    def test_only_previously_assigned_roles_are_removed(self):
        diff = sync_roles(_token(group=["A"]), ROLES, "group", assigned_by_plugin=[])

        assert _names(diff.assign) == ["A"]
        assert diff.unassign == []

    def test_match_is_case_sensitive(self):
        diff = sync_roles(_token(group=["a"]), ROLES, "group")
        assert diff.empty

    def test_absent_claim_unassigns_everything_owned(self):
        diff = sync_roles(_token(), ROLES, "group", assigned_by_plugin=["A", "B"])

        assert diff.assign == []
        assert _names(diff.unassign) == ["A", "B"]

    def test_malformed_claim_counts_as_no_groups(self):
        diff = sync_roles(_token(group="A"), ROLES, "group", assigned_by_plugin=["A"])

        assert diff.assign == []
        assert _names(diff.unassign) == ["A"]

    def test_custom_claim_name(self):
        diff = sync_roles(_token(roles=["C"], group=["A"]), ROLES, "roles")
        assert _names(diff.assign) == ["C"]

    def test_unknown_groups_ignored(self):
        diff = sync_roles(_token(group=["Z"]), ROLES, "group")
        assert diff == RoleDiff()

    def test_deterministic(self):
        token = _token(group=["C", "A"])
        first = sync_roles(token, ROLES, "group", ["B"])
        second = sync_roles(token, ROLES, "group", ["B"])

        assert first == second
        assert _names(first.assign) == ["A", "C"]

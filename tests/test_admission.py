"""Tests for JobSet admission defaulting and validation."""

import copy

import pytest

from conftest import TEST_POD_SPEC, make_jobset, make_member
from jobset_operator import crd
from jobset_operator.admission import (
    IMMUTABLE_FIELD_CHANGED,
    INVALID_SPEC,
    INVALID_SUCCESS_POLICY_TARGET,
    default_jobset_spec,
    first_difference,
    review,
)


def persisted(body):
    """What the API server stores after the mutating webhook ran."""
    body = copy.deepcopy(body)
    body["spec"] = default_jobset_spec(body["spec"])
    return body


def pod_spec(body, index=0):
    return body["spec"]["members"][index]["jobTemplate"]["spec"]["template"]["spec"]


# =============================================================================
# DEFAULTING
# =============================================================================


class TestDefaulting:

    def test_completion_mode_defaults_to_indexed(self):
        spec = default_jobset_spec(make_jobset()["spec"])
        assert spec["members"][0]["jobTemplate"]["spec"]["completionMode"] == crd.COMPLETION_MODE_INDEXED

    def test_completion_mode_unchanged_if_set(self):
        member = make_member(completion_mode=crd.COMPLETION_MODE_NON_INDEXED, network={"enableDNSHostnames": False})
        spec = default_jobset_spec(make_jobset(members=[member])["spec"])
        assert spec["members"][0]["jobTemplate"]["spec"]["completionMode"] == crd.COMPLETION_MODE_NON_INDEXED

    def test_enable_dns_hostnames_defaults_to_true(self):
        spec = default_jobset_spec(make_jobset()["spec"])
        assert spec["members"][0]["network"] == {"enableDNSHostnames": True}

    def test_enable_dns_hostnames_defaults_when_network_block_is_empty(self):
        member = make_member(network={"enableDNSHostnames": None})
        spec = default_jobset_spec(make_jobset(members=[member])["spec"])
        assert spec["members"][0]["network"]["enableDNSHostnames"] is True

    def test_enable_dns_hostnames_false_is_kept(self):
        member = make_member(network={"enableDNSHostnames": False})
        spec = default_jobset_spec(make_jobset(members=[member])["spec"])
        assert spec["members"][0]["network"]["enableDNSHostnames"] is False

    def test_restart_policy_defaults_to_on_failure(self):
        spec = default_jobset_spec(make_jobset()["spec"])
        assert pod_spec({"spec": spec})["restartPolicy"] == crd.RESTART_POLICY_ON_FAILURE

    def test_restart_policy_unchanged_if_set(self):
        member = make_member(pod_spec=dict(TEST_POD_SPEC, restartPolicy="Never"))
        spec = default_jobset_spec(make_jobset(members=[member])["spec"])
        assert pod_spec({"spec": spec})["restartPolicy"] == "Never"

    def test_success_policy_defaults_to_all(self):
        spec = default_jobset_spec(make_jobset()["spec"])
        assert spec["successPolicy"] == {"operator": crd.OPERATOR_ALL, "targets": []}

    def test_success_policy_operator_filled_in(self):
        spec = default_jobset_spec(make_jobset(success_policy={"targets": ["rjob"]})["spec"])
        assert spec["successPolicy"] == {"operator": crd.OPERATOR_ALL, "targets": ["rjob"]}

    def test_replicas_and_suspend_defaults(self):
        member = make_member()
        del member["replicas"]
        spec = default_jobset_spec(make_jobset(members=[member])["spec"])
        assert spec["members"][0]["replicas"] == 1
        assert spec["suspend"] is False

    def test_does_not_mutate_input(self):
        original = make_jobset()["spec"]
        snapshot = copy.deepcopy(original)
        default_jobset_spec(original)
        assert original == snapshot

    @pytest.mark.parametrize("spec", [
        make_jobset()["spec"],
        make_jobset(members=[make_member("a", 3), make_member("b", network={})], suspend=True)["spec"],
        make_jobset(success_policy={"operator": "Any"}, failure_policy={"maxRestarts": 2})["spec"],
    ])
    def test_idempotent(self, spec):
        once = default_jobset_spec(spec)
        assert default_jobset_spec(once) == once


# =============================================================================
# CREATE VALIDATION
# =============================================================================


class TestCreateValidation:

    def test_valid_jobset_accepted(self):
        decision = review("CREATE", make_jobset())
        assert decision.allowed

    def test_success_policy_with_unknown_target_rejected(self):
        body = make_jobset(success_policy={"operator": "All", "targets": ["does-not-exist"]})
        decision = review("CREATE", body)
        assert not decision.allowed
        assert decision.reason == INVALID_SUCCESS_POLICY_TARGET
        assert "does-not-exist" in decision.message

    def test_success_policy_with_known_targets_accepted(self):
        body = make_jobset(
            members=[make_member("leader"), make_member("workers", replicas=4)],
            success_policy={"operator": "Any", "targets": ["leader"]},
        )
        assert review("CREATE", body).allowed

    @pytest.mark.parametrize("body", [
        make_jobset(members=[]),
        make_jobset(members=[make_member(replicas=0)]),
        make_jobset(members=[make_member(replicas=-2)]),
        make_jobset(members=[make_member("a"), make_member("a")]),
        make_jobset(members=[make_member("Not_A_Label")]),
        make_jobset(members=[{"name": "rjob", "replicas": 1, "jobTemplate": {"spec": {}}}]),
        make_jobset(failure_policy={"maxRestarts": -1}),
        make_jobset(success_policy={"operator": "Most"}),
        make_jobset(members=[make_member(network="on")]),
        make_jobset(success_policy=["rjob"]),
        make_jobset(success_policy={"operator": "All", "targets": 5}),
        make_jobset(success_policy={"operator": "All", "targets": [{"name": "rjob"}]}),
    ])
    def test_structural_violations_rejected(self, body):
        decision = review("CREATE", body)
        assert not decision.allowed
        assert decision.reason == INVALID_SPEC

    def test_dns_hostnames_require_indexed_completion(self):
        member = make_member(completion_mode=crd.COMPLETION_MODE_NON_INDEXED)
        decision = review("CREATE", make_jobset(members=[member]))
        assert not decision.allowed
        assert "Indexed" in decision.message

    def test_child_job_names_must_fit(self):
        decision = review("CREATE", make_jobset(name="x" * 60, members=[make_member("rjob", replicas=10)]))
        assert not decision.allowed
        assert decision.reason == INVALID_SPEC

    def test_delete_always_allowed(self):
        assert review("DELETE", None, make_jobset()).allowed

    def test_accepted_creates_only_target_existing_members(self):
        members = [make_member("a"), make_member("b")]
        for targets in ([], ["a"], ["b"], ["a", "b"], ["c"], ["a", "c"]):
            body = make_jobset(members=members, success_policy={"operator": "All", "targets": targets})
            if review("CREATE", body).allowed:
                assert set(targets) <= {"a", "b"}


# =============================================================================
# UPDATE VALIDATION
# =============================================================================


class TestUpdateValidation:

    def test_node_selector_update_rejected_when_running(self):
        prior = persisted(make_jobset())
        candidate = copy.deepcopy(prior)
        pod_spec(candidate)["nodeSelector"] = {"test": "test"}

        decision = review("UPDATE", candidate, prior)

        assert not decision.allowed
        assert decision.reason == IMMUTABLE_FIELD_CHANGED
        assert "nodeSelector" in decision.message

    def test_node_selector_update_allowed_when_suspended(self):
        prior = persisted(make_jobset(suspend=True))
        candidate = copy.deepcopy(prior)
        pod_spec(candidate)["nodeSelector"] = {"test": "test"}

        assert review("UPDATE", candidate, prior).allowed

    def test_hostname_update_rejected_when_running(self):
        prior = persisted(make_jobset())
        candidate = copy.deepcopy(prior)
        pod_spec(candidate)["hostname"] = "test"
        pod_spec(candidate)["subdomain"] = "test"

        decision = review("UPDATE", candidate, prior)
        assert decision.reason == IMMUTABLE_FIELD_CHANGED

    def test_hostname_update_rejected_when_suspended(self):
        prior = persisted(make_jobset(suspend=True))
        candidate = copy.deepcopy(prior)
        pod_spec(candidate)["hostname"] = "test"
        pod_spec(candidate)["subdomain"] = "test"

        decision = review("UPDATE", candidate, prior)
        assert decision.reason == IMMUTABLE_FIELD_CHANGED

    def test_suspend_jobset(self):
        prior = persisted(make_jobset())
        candidate = copy.deepcopy(prior)
        candidate["spec"]["suspend"] = True
        assert review("UPDATE", candidate, prior).allowed

    def test_resume_jobset(self):
        prior = persisted(make_jobset(suspend=True))
        candidate = copy.deepcopy(prior)
        candidate["spec"]["suspend"] = False
        assert review("UPDATE", candidate, prior).allowed

    def test_resume_with_node_selector_in_same_write_allowed(self):
        prior = persisted(make_jobset(suspend=True))
        candidate = copy.deepcopy(prior)
        candidate["spec"]["suspend"] = False
        pod_spec(candidate)["nodeSelector"] = {"pool": "a100"}
        assert review("UPDATE", candidate, prior).allowed

    def test_suspend_with_node_selector_in_same_write_rejected(self):
        prior = persisted(make_jobset())
        candidate = copy.deepcopy(prior)
        candidate["spec"]["suspend"] = True
        pod_spec(candidate)["nodeSelector"] = {"pool": "a100"}
        assert not review("UPDATE", candidate, prior).allowed

    @pytest.mark.parametrize("suspend", [True, False])
    def test_replicas_frozen(self, suspend):
        prior = persisted(make_jobset(suspend=suspend))
        candidate = copy.deepcopy(prior)
        candidate["spec"]["members"][0]["replicas"] = 2

        decision = review("UPDATE", candidate, prior)
        assert decision.reason == IMMUTABLE_FIELD_CHANGED
        assert decision.message.startswith("spec.members[0].replicas")

    @pytest.mark.parametrize("suspend", [True, False])
    def test_policies_frozen(self, suspend):
        prior = persisted(make_jobset(suspend=suspend))
        candidate = copy.deepcopy(prior)
        candidate["spec"]["failurePolicy"] = {"maxRestarts": 3}
        assert review("UPDATE", candidate, prior).reason == IMMUTABLE_FIELD_CHANGED

    def test_adding_member_rejected_even_when_suspended(self):
        prior = persisted(make_jobset(suspend=True))
        candidate = copy.deepcopy(prior)
        candidate["spec"]["members"].append(default_jobset_spec({"members": [make_member("extra")]})["members"][0])
        assert review("UPDATE", candidate, prior).reason == IMMUTABLE_FIELD_CHANGED

    def test_custom_allow_list(self):
        prior = persisted(make_jobset(suspend=True))
        candidate = copy.deepcopy(prior)
        pod_spec(candidate)["priorityClassName"] = "high"

        assert not review("UPDATE", candidate, prior).allowed
        assert review("UPDATE", candidate, prior, mutable_pod_fields=("priorityClassName",)).allowed

    def test_finished_jobset_rejects_changes(self):
        status = {"conditions": [{"type": "Completed", "status": "True", "reason": "SuccessPolicySatisfied"}]}
        prior = persisted(make_jobset(suspend=True, status=status))
        candidate = copy.deepcopy(prior)
        candidate["spec"]["suspend"] = False

        decision = review("UPDATE", candidate, prior)
        assert decision.reason == IMMUTABLE_FIELD_CHANGED
        assert "Completed" in decision.message

    def test_finished_jobset_accepts_metadata_only_update(self):
        status = {"conditions": [{"type": "Failed", "status": "True", "reason": "FailedJobs"}]}
        prior = persisted(make_jobset(status=status))
        candidate = copy.deepcopy(prior)
        candidate["metadata"]["labels"] = {"team": "ml"}
        assert review("UPDATE", candidate, prior).allowed

    def test_unchanged_update_accepted_before_defaulting(self):
        prior = persisted(make_jobset())
        assert review("UPDATE", make_jobset(), prior).allowed

    def test_running_updates_leave_spec_identical(self):
        prior = persisted(make_jobset(failure_policy={"maxRestarts": 1}))
        edits = [
            lambda s: s.update(suspend=True),
            lambda s: s["members"][0].update(replicas=3),
            lambda s: s["successPolicy"].update(operator="Any"),
            lambda s: s["failurePolicy"].update(maxRestarts=5),
            lambda s: s["members"][0]["jobTemplate"]["spec"]["template"]["spec"].update(nodeSelector={"a": "b"}),
        ]
        for edit in edits:
            candidate = copy.deepcopy(prior)
            edit(candidate["spec"])
            if review("UPDATE", candidate, prior).allowed:
                for field in ("members", "failurePolicy", "successPolicy"):
                    assert candidate["spec"][field] == prior["spec"][field]


class TestFirstDifference:

    def test_identical(self):
        assert first_difference({"a": [1, {"b": 2}]}, {"a": [1, {"b": 2}]}, "spec") is None

    def test_nested_path(self):
        assert first_difference({"a": [1, {"b": 2}]}, {"a": [1, {"b": 3}]}, "spec") == "spec.a[1].b"

    def test_added_key(self):
        assert first_difference({"a": 1}, {"a": 1, "c": 2}, "spec") == "spec.c"

    def test_list_length(self):
        assert first_difference({"a": [1]}, {"a": [1, 2]}, "spec") == "spec.a"

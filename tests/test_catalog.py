import json

from engine.config import RunConfig
from runs.catalog import InMemoryCatalog, load_catalog
from runs.models import TestFile, TestStep
from runs.service import build_service
from runs.store import JsonFileRunStore


def _payload():
    return {
        "id": "tf-login",
        "name": "Login",
        "ownerId": "user-1",
        "baseUrl": "https://app.test",
        "steps": [
            {"id": "s2", "stepNumber": 2, "action": "click", "locators": {"testId": "go"}},
            {"id": "s1", "stepNumber": 1, "action": "fill", "value": "ada", "locators": {"label": "User"}},
        ],
    }


def test_lookups_return_ordered_copies():
    catalog = InMemoryCatalog([TestFile.model_validate(_payload())])

    test_file = catalog.get_test_file_with_steps_and_project("tf-login")
    test_file.steps.clear()

    again = catalog.get_test_file_with_steps_and_project("tf-login")
    assert [step.id for step in again.steps] == ["s1", "s2"]
    assert {step.test_file_id for step in again.steps} == {"tf-login"}
    assert catalog.verify_ownership("tf-login", "user-1")
    assert not catalog.verify_ownership("tf-login", "user-2")
    assert not catalog.verify_ownership("missing", "user-1")


def test_replace_and_remove():
    catalog = InMemoryCatalog([TestFile.model_validate(_payload())])

    updated = catalog.replace_steps("tf-login", [TestStep(stepNumber=1, action="navigate", value="/home")])

    assert [step.action for step in updated.steps] == ["navigate"]
    assert updated.steps[0].test_file_id == "tf-login"
    assert catalog.remove_test_file("tf-login") is True
    assert catalog.remove_test_file("tf-login") is False
    assert catalog.get_test_file_with_steps_and_project("tf-login") is None


def test_load_catalog_from_list_or_wrapped_object(tmp_path):
    listed = tmp_path / "list.json"
    listed.write_text(json.dumps([_payload()]), encoding="utf-8")
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({"testFiles": [_payload()]}), encoding="utf-8")

    for path in (listed, wrapped):
        catalog = load_catalog(path)
        test_file = catalog.get_test_file_with_steps_and_project("tf-login")
        assert test_file.base_url == "https://app.test"
        assert len(test_file.steps) == 2


def test_load_catalog_unset_or_missing_is_empty(tmp_path):
    assert load_catalog(None).get_test_file_with_steps_and_project("tf-login") is None
    assert load_catalog(tmp_path / "nope.json").get_test_file_with_steps_and_project("tf-login") is None


def test_build_service_wires_configured_store_and_catalog(tmp_path):
    catalog_path = tmp_path / "catalog.json"
    catalog_path.write_text(json.dumps([_payload()]), encoding="utf-8")
    config = RunConfig(store_path=tmp_path / "runs.json", catalog_path=catalog_path)

    service = build_service(config)
    try:
        assert isinstance(service.store, JsonFileRunStore)
        assert service.catalog.verify_ownership("tf-login", "user-1")
        assert service.list_runs_for_test_file("tf-login", "user-1") == []
    finally:
        service.shutdown()

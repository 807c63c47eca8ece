import json
import re

import pytest
import pydantic
from pydantic_core import PydanticSerializationError

import mutate

from exc import SerializationError
from models import AdmissionRequest, InstanceRegistry, PatchAction, SecretTemplate


PREFIX = "/metadata/annotations/vault.hashicorp.com~1"


def paths(patches):
    return [patch.path for patch in patches]


def test_base_patches(registry):
    patches = mutate.build_patches("profile-team-a", "no-such-class", registry)

    assert [patch.model_dump(mode="json") for patch in patches] == [
        {"op": "add", "path": PREFIX + "agent-inject", "value": "true"},
        {"op": "add", "path": PREFIX + "agent-pre-populate", "value": "false"},
        {"op": "add", "path": PREFIX + "role", "value": "profile-team-a"},
    ]


def test_external_service_follows_base_patches(registry):
    patches = mutate.build_patches(
        "profile-team-a", "unclassified", registry, True, "https://vault.example"
    )

    assert patches[3].path == PREFIX + "service"
    assert patches[3].value == "https://vault.example"
    assert len(patches) == 3 + 1 + 4 * 2


@pytest.mark.parametrize(
    "classification,expected",
    [("unclassified", 2), ("protected-b", 1), ("secret", 0)],
)
def test_patch_count(registry, classification, expected):
    patches = mutate.build_patches("profile-team-a", classification, registry)
    assert len(patches) == 3 + 4 * expected


def test_registry_order(registry):
    patches = mutate.build_patches("profile-team-a", "unclassified", registry)

    assert paths(patches)[3:] == [
        PREFIX + "agent-inject-secret-minio-standard",
        PREFIX + "agent-inject-template-minio-standard",
        PREFIX + "agent-inject-secret-minio-standard.json",
        PREFIX + "agent-inject-template-minio-standard.json",
        PREFIX + "agent-inject-secret-minio-premium",
        PREFIX + "agent-inject-template-minio-premium",
        PREFIX + "agent-inject-secret-minio-premium.json",
        PREFIX + "agent-inject-template-minio-premium.json",
    ]


def test_secret_paths(registry):
    patches = mutate.build_patches("profile-team-a", "protected-b", registry)

    assert patches[3].value == "minio_protected_b/keys/profile-team-a"
    assert patches[5].value == "minio_protected_b/keys/profile-team-a"


def test_paths_are_json_pointers(registry):
    patches = mutate.build_patches(
        "profile-team-a", "unclassified", registry, True, "https://vault.example"
    )

    for path in paths(patches):
        assert path.startswith(PREFIX)
        assert "vault.hashicorp.com/" not in path
        assert re.fullmatch(r"(/([^~/]|~[01])*)+", path)


def test_json_patch_escape():
    assert mutate.json_patch_escape("a/b~c") == "a~1b~0c"


def test_shell_template():
    tmpl = SecretTemplate(
        role="profile-team-a",
        secretPath="minio_standard/keys/profile-team-a",
        serviceUrl="http://minio.minio-standard-system:443",
    )

    assert mutate.render_shell_template(tmpl) == (
        "\n"
        '{{- with secret "minio_standard/keys/profile-team-a" }}\n'
        'export MINIO_URL="http://minio.minio-standard-system:443"\n'
        'export MINIO_ACCESS_KEY="{{ .Data.accessKeyId }}"\n'
        'export MINIO_SECRET_KEY="{{ .Data.secretAccessKey }}"\n'
        'export AWS_ACCESS_KEY_ID="{{ .Data.accessKeyId }}"\n'
        'export AWS_SECRET_ACCESS_KEY="{{ .Data.secretAccessKey }}"\n'
        "{{- end }}\n"
    )


def test_json_template_matches_shell_template():
    """Both renderings must export the same keys with the same values."""

    tmpl = SecretTemplate(
        role="profile-team-a",
        secretPath="minio_standard/keys/profile-team-a",
        serviceUrl="http://minio.minio-standard-system:443",
    )

    shell_lines = mutate.render_shell_template(tmpl).strip().splitlines()
    json_lines = mutate.render_json_template(tmpl).strip().splitlines()

    assert shell_lines[0] == json_lines[0]
    assert shell_lines[-1] == json_lines[-1]

    exported = dict(
        line.removeprefix("export ").split("=", 1) for line in shell_lines[1:-1]
    )
    exported = {key: json.loads(val) for key, val in exported.items()}

    body = json.loads("\n".join(json_lines[1:-1]))
    assert body == exported
    assert list(body) == [
        "MINIO_URL",
        "MINIO_ACCESS_KEY",
        "MINIO_SECRET_KEY",
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
    ]


def test_empty_registry():
    patches = mutate.build_patches("profile-team-a", "unclassified", InstanceRegistry(()))
    assert len(patches) == 3


def test_patch_action_rejects_bad_path():
    with pytest.raises(pydantic.ValidationError):
        PatchAction(op="add", path="metadata/annotations", value="x")

    with pytest.raises(pydantic.ValidationError):
        PatchAction(op="add", path="/metadata/annotations/a~b", value="x")


def test_patch_action_rejects_non_string_value():
    with pytest.raises(pydantic.ValidationError):
        PatchAction(op="add", path="/metadata/annotations/a", value={"a": 1})


def test_assemble_without_patches():
    req = AdmissionRequest(uid="1234", object={"metadata": {}})
    res = mutate.assemble(req, [])

    assert res.allowed
    assert res.uid == "1234"
    assert res.patch is None
    assert res.patchType is None
    assert res.auditAnnotations is None


def test_assemble_with_patches(registry):
    req = AdmissionRequest(uid="1234", object={"metadata": {}})
    res = mutate.assemble(
        req, mutate.build_patches("profile-team-a", "protected-b", registry)
    )

    assert res.allowed
    assert res.patchType == "JSONPatch"
    assert res.status.status == "Success"
    assert res.auditAnnotations == {
        "minio-admission-controller": "Added minio credentials"
    }


def test_assemble_serialization_failure(registry, monkeypatch):
    def broken_patch(patches):
        raise PydanticSerializationError("unable to serialize")

    monkeypatch.setattr(mutate, "Patch", broken_patch)

    req = AdmissionRequest(uid="1234", object={"metadata": {}})
    with pytest.raises(SerializationError):
        mutate.assemble(
            req, mutate.build_patches("profile-team-a", "protected-b", registry)
        )

import functools
import logging
import os

import pydantic
from pydantic_core import PydanticSerializationError

from flask import Flask, request, jsonify, current_app

from models import (
    BaseModel,
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReview,
    Instance,
    InstanceRegistry,
    Patch,
    PatchAction,
    PatchOp,
    PatchType,
    Pod,
    SecretTemplate,
    Status,
)

from providers import FileProvider
from exc import (
    ApplicationError,
    DecodeError,
    MissingNamespaceError,
    SerializationError,
)

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


NOTEBOOK_LABEL = "notebook-name"
WORKFLOW_LABEL = "workflows.argoproj.io/workflow"
INJECT_ANNOTATION = "data.statcan.gc.ca/inject-minio-creds"
CLASSIFICATION_LABEL = "data.statcan.gc.ca/classification"
DEFAULT_CLASSIFICATION = "unclassified"

VAULT_ANNOTATION_PREFIX = "vault.hashicorp.com/"


class DEFAULTS:
    PROVIDER = FileProvider
    INSTANCES_FILE = "instances.json"
    AUDIT_ANNOTATION = {"minio-admission-controller": "Added minio credentials"}
    TLS_CERT = "./certs/tls.crt"
    TLS_KEY = "./certs/tls.key"
    HOST = "0.0.0.0"
    PORT = 8443


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                return jsonify(res.model_dump(mode="json", exclude_none=True))
            else:
                return jsonify(res)

        return _inner

    return _outer


def json_patch_escape(val):
    return val.replace("~", "~0").replace("/", "~1")


def clean_name(name):
    return name.replace("_", "-")


def annotation_path(name):
    return f"/metadata/annotations/{json_patch_escape(VAULT_ANNOTATION_PREFIX + name)}"


def add_annotation(name, value) -> PatchAction:
    return PatchAction(op=PatchOp.ADD, path=annotation_path(name), value=value)


def injection_reason(pod: Pod) -> str | None:
    """Return which rule selects this pod for credential injection, or None
    if the pod should be left alone."""

    if NOTEBOOK_LABEL in pod.metadata.labels:
        return "notebook"

    if WORKFLOW_LABEL in pod.metadata.labels:
        return "workflow"

    if INJECT_ANNOTATION in pod.metadata.annotations:
        return "annotation"

    return None


def should_inject(pod: Pod) -> bool:
    return injection_reason(pod) is not None


def pod_classification(pod: Pod) -> str:
    return pod.metadata.labels.get(CLASSIFICATION_LABEL, DEFAULT_CLASSIFICATION)


def resolve_role(pod_namespace: str | None, request_namespace: str | None) -> str:
    """Derive the Vault role for a pod.

    The pod namespace wins; the admission request namespace is used when the
    pod does not carry one.
    """

    namespace = pod_namespace or request_namespace
    if not namespace:
        raise MissingNamespaceError(
            "pod and request namespace were empty; cannot determine the namespace"
        )

    return clean_name(f"profile-{namespace}")


def resolve_target(pod: Pod, external_addr: str | None) -> tuple[bool, str]:
    # Only workflow pods are redirected to the external address
    if not external_addr:
        return False, ""

    if WORKFLOW_LABEL in pod.metadata.labels:
        return True, external_addr

    return False, ""


def secret_template(instance: Instance, role: str) -> SecretTemplate:
    return SecretTemplate(
        role=role,
        secretPath=f"{instance.name}/keys/{role}",
        serviceUrl=instance.serviceUrl,
    )


def render_shell_template(tmpl: SecretTemplate) -> str:
    return f"""
{{{{- with secret "{tmpl.secretPath}" }}}}
export MINIO_URL="{tmpl.serviceUrl}"
export MINIO_ACCESS_KEY="{{{{ .Data.accessKeyId }}}}"
export MINIO_SECRET_KEY="{{{{ .Data.secretAccessKey }}}}"
export AWS_ACCESS_KEY_ID="{{{{ .Data.accessKeyId }}}}"
export AWS_SECRET_ACCESS_KEY="{{{{ .Data.secretAccessKey }}}}"
{{{{- end }}}}
"""


def render_json_template(tmpl: SecretTemplate) -> str:
    return f"""
{{{{- with secret "{tmpl.secretPath}" }}}}
{{
\t"MINIO_URL": "{tmpl.serviceUrl}",
\t"MINIO_ACCESS_KEY": "{{{{ .Data.accessKeyId }}}}",
\t"MINIO_SECRET_KEY": "{{{{ .Data.secretAccessKey }}}}",
\t"AWS_ACCESS_KEY_ID": "{{{{ .Data.accessKeyId }}}}",
\t"AWS_SECRET_ACCESS_KEY": "{{{{ .Data.secretAccessKey }}}}"
}}
{{{{- end }}}}
"""


def build_patches(
    role: str,
    classification: str,
    registry: InstanceRegistry,
    use_external: bool = False,
    external_addr: str = "",
) -> list[PatchAction]:
    patches = [
        add_annotation("agent-inject", "true"),
        add_annotation("agent-pre-populate", "false"),
        add_annotation("role", role),
    ]

    if use_external:
        patches.append(add_annotation("service", external_addr))

    for instance in registry.for_classification(classification):
        slug = clean_name(instance.name)
        tmpl = secret_template(instance, role)

        patches.extend(
            [
                add_annotation(f"agent-inject-secret-{slug}", tmpl.secretPath),
                add_annotation(
                    f"agent-inject-template-{slug}", render_shell_template(tmpl)
                ),
                add_annotation(f"agent-inject-secret-{slug}.json", tmpl.secretPath),
                add_annotation(
                    f"agent-inject-template-{slug}.json", render_json_template(tmpl)
                ),
            ]
        )

    return patches


def decode_pod(req: AdmissionRequest) -> Pod:
    if req.object is None:
        raise DecodeError("unable to decode Pod: request has no object")

    try:
        return Pod.model_validate(req.object)
    except pydantic.ValidationError as err:
        raise DecodeError(f"unable to decode Pod: {err}") from err


def assemble(
    req: AdmissionRequest, patches: list[PatchAction], audit_annotation=None
) -> AdmissionResponse:
    if not patches:
        return AdmissionResponse(allowed=True, uid=req.uid)

    try:
        return AdmissionResponse(
            allowed=True,
            uid=req.uid,
            patchType=PatchType.JSONPatch,
            patch=Patch(patches),
            auditAnnotations=audit_annotation or DEFAULTS.AUDIT_ANNOTATION,
            status=Status(status="Success"),
        )
    except (pydantic.ValidationError, PydanticSerializationError) as err:
        raise SerializationError(f"unable to serialize patch: {err}") from err


def mutate(
    req: AdmissionRequest,
    registry: InstanceRegistry,
    external_addr: str | None = None,
    audit_annotation=None,
) -> AdmissionResponse:
    pod = decode_pod(req)
    pod_name = f"{pod.metadata.namespace}/{pod.metadata.name}"

    reason = injection_reason(pod)
    if reason is None:
        LOG.info("Not injecting the pod %s", pod_name)
        return assemble(req, [])

    LOG.info("Matched %s rule for %s; injecting", reason, pod_name)

    role = resolve_role(pod.metadata.namespace, req.namespace)
    use_external, vault_addr = resolve_target(pod, external_addr)
    if use_external:
        LOG.info("Will use external Vault address for workflow %s", pod_name)

    patches = build_patches(
        role, pod_classification(pod), registry, use_external, vault_addr
    )

    return assemble(req, patches, audit_annotation)


@jsonresponse()
def mutate_pod():
    body = AdmissionReview(**request.get_json())
    if body.request is None:
        raise DecodeError("admission review contains no request")

    response = mutate(
        body.request,
        current_app.registry,
        current_app.config["VAULT_ADDR_HTTPS"],
        current_app.config["AUDIT_ANNOTATION"],
    )

    return AdmissionReview(apiVersion=body.apiVersion, response=response)


def handle_validationerror(err):
    LOG.error("invalid admission request: %s", err)
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    LOG.error("failed to process request: %s", err)
    return str(err), 500, {"content-type": "text/plain"}


def root():
    return "Hello, world!", 200, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    The instance registry is loaded once here and shared, read-only, by every
    request.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("MINIO_INJECTOR")
    if config:
        app.config.update(config)

    app.config.setdefault("VAULT_ADDR_HTTPS", os.environ.get("VAULT_ADDR_HTTPS"))

    provider = app.config["PROVIDER"](app.config["INSTANCES_FILE"])
    app.registry = InstanceRegistry(tuple(provider.instances()))

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(DecodeError)(handle_validationerror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/", view_func=root)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/_healthz", endpoint="_healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app


def main():
    app = create_app()
    LOG.info("Listening on %s:%s", app.config["HOST"], app.config["PORT"])
    app.run(
        host=app.config["HOST"],
        port=int(app.config["PORT"]),
        ssl_context=(app.config["TLS_CERT"], app.config["TLS_KEY"]),
    )


if __name__ == "__main__":
    main()

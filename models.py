import base64
import re
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


# A JSON Pointer is empty or a sequence of "/"-prefixed tokens in which "~"
# only appears as "~0" or "~1" (RFC 6901).
JSON_POINTER = re.compile(r"(/([^~/]|~[01])*)*")


class PatchAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: PatchOp
    path: str
    value: str

    @field_validator("path")
    @classmethod
    def validate_path(cls, val):
        if not val.startswith("/") or not JSON_POINTER.fullmatch(val):
            raise ValueError(f"{val!r} is not a valid JSON pointer")
        return val


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


class Instance(BaseModel):
    """A MinIO deployment whose credentials may be injected into pods."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    alias: str = ""
    classification: str = ""
    serviceUrl: str = ""
    externalUrl: str = ""


class InstanceRegistry(RootModel[tuple[Instance, ...]]):
    """The ordered set of configured instances.

    Order is significant: patches are emitted in registry order.
    """

    model_config = ConfigDict(frozen=True)

    def __iter__(self):
        return iter(self.root)

    def __len__(self):
        return len(self.root)

    def __getitem__(self, item):
        return self.root[item]

    def for_classification(self, classification: str) -> list[Instance]:
        return [
            instance
            for instance in self.root
            if instance.classification == classification
        ]


class SecretTemplate(BaseModel):
    """Values shared by the shell and JSON renderings of a Vault template."""

    model_config = ConfigDict(frozen=True)

    role: str
    secretPath: str
    serviceUrl: str


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class Status(BaseModel):
    status: str | None = None
    message: str | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: Status | None = None
    uid: str
    patchType: PatchType | None = None
    patch: str | None = None
    auditAnnotations: dict[str, str] | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json().encode()).decode()
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
            if isinstance(val, bytes):
                val = val.decode()
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")

        return self


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str = Field(min_length=1)
    name: str | None = None
    namespace: str | None = None
    operation: Operation = Operation.CREATE
    object: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class Metadata(BaseModel):
    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def validate_maps(cls, val):
        # Kubernetes serializes an empty map as null
        return {} if val is None else val


class Pod(BaseModel):
    metadata: Metadata = Field(default_factory=Metadata)

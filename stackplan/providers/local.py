"""
Local provider: simulates the five resource kinds in a JSON file so plans can
be applied and torn down without a cloud account.
"""
import json
import os
import threading
import uuid
from typing import Any, Dict

from stackplan.errors import ResourceNotFoundError
from stackplan.models.resource import ResourceKind
from stackplan.providers.base import Provider

DEFAULT_PATH = os.path.join(".stackplan", "local-provider.json")
DEFAULT_PORT = 3000

_ID_PREFIX = {
    ResourceKind.NETWORK:         "vpc",
    ResourceKind.SECURITY_POLICY: "sg",
    ResourceKind.IDENTITY_ROLE:   "role",
    ResourceKind.REGISTRY:        "repo",
    ResourceKind.COMPUTE_SERVICE: "svc",
}


class LocalProvider(Provider):
    name = "local"

    def __init__(
        self,
        path: str = DEFAULT_PATH,
        account_id: str = "000000000000",
        region: str = "local-1",
    ):
        self.path = path
        self.account_id = account_id
        self.region = region
        self._mutex = threading.Lock()

    # ------------------------------------------------------------------ storage

    def _read(self) -> Dict[str, dict]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, encoding="utf-8") as fh:
            return json.load(fh)

    def _write(self, objects: Dict[str, dict]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.part"
        with open(tmp_path, "w", encoding="utf-8", newline="\n") as fh:
            json.dump(objects, fh, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    # ------------------------------------------------------------------ outputs

    def _outputs(self, kind: ResourceKind, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        name = str(attributes.get("name") or provider_id)
        outputs: Dict[str, Any] = {"id": provider_id}
        if kind == ResourceKind.IDENTITY_ROLE:
            outputs["arn"] = f"arn:aws:iam::{self.account_id}:role/{name}"
        elif kind == ResourceKind.REGISTRY:
            outputs["arn"] = f"arn:aws:ecr:{self.region}:{self.account_id}:repository/{name}"
            outputs["repository_url"] = (
                f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com/{name}"
            )
        elif kind == ResourceKind.COMPUTE_SERVICE:
            port = attributes.get("port", DEFAULT_PORT)
            outputs["arn"] = f"arn:aws:ecs:{self.region}:{self.account_id}:service/{name}"
            outputs["endpoint"] = f"http://{name}.{self.region}.local:{port}"
        return outputs

    # ------------------------------------------------------------------ API

    def create(self, kind: ResourceKind, attributes: Dict[str, Any]) -> Dict[str, Any]:
        kind = ResourceKind(kind)
        provider_id = f"{_ID_PREFIX[kind]}-{uuid.uuid4().hex[:12]}"
        outputs = self._outputs(kind, provider_id, attributes)
        with self._mutex:
            objects = self._read()
            objects[provider_id] = {
                "kind": kind.value,
                "attributes": attributes,
                "outputs": outputs,
            }
            self._write(objects)
        return outputs

    def update(self, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._mutex:
            objects = self._read()
            if provider_id not in objects:
                raise ResourceNotFoundError(provider_id)
            kind = ResourceKind(objects[provider_id]["kind"])
            outputs = self._outputs(kind, provider_id, attributes)
            objects[provider_id].update({"attributes": attributes, "outputs": outputs})
            self._write(objects)
        return outputs

    def destroy(self, provider_id: str) -> None:
        with self._mutex:
            objects = self._read()
            if provider_id not in objects:
                raise ResourceNotFoundError(provider_id)
            del objects[provider_id]
            self._write(objects)

    def describe(self, provider_id: str) -> Dict[str, Any]:
        with self._mutex:
            objects = self._read()
        if provider_id not in objects:
            raise ResourceNotFoundError(provider_id)
        obj = objects[provider_id]
        return {**obj["attributes"], **obj["outputs"]}

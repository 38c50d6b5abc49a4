import hashlib
import json
from typing import Any

from pydantic import BaseModel


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def hash_canonical_payload(payload: Any) -> str:
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def hash_model(model: BaseModel) -> str:
    return hash_canonical_payload(model.model_dump(mode="json"))

"""Shared utilities for OpenAI API integration."""
import json
import re

from pydantic import BaseModel

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_RESULTS_OBJECT_RE = re.compile(r"\{[\s\S]*\"results\"[\s\S]*\}")


def strict_schema(schema: dict) -> dict:
    """Make a model's JSON schema acceptable to OpenAI strict structured outputs.

    Every property becomes required and no extra keys are allowed, matching
    `extra="forbid"` on the pydantic side. The assistant run sends the result
    as its `response_format`, so the reply is constrained by the same
    contract `parse_reply` validates against.
    Applied via: model_config = ConfigDict(json_schema_extra=strict_schema)
    """
    schema["required"] = list(schema.get("properties", {}).keys())
    schema["additionalProperties"] = False
    for defn in schema.get("$defs", {}).values():
        defn["required"] = list(defn.get("properties", {}).keys())
        defn["additionalProperties"] = False
    return schema


def latest_assistant_text(messages) -> str | None:
    """Return the text of the newest assistant message in a thread listing.

    `messages` is the page returned by `client.beta.threads.messages.list`
    with `order="desc"`. Non-text content parts (images) are skipped.
    """
    for message in messages.data:
        if message.role != "assistant":
            continue
        parts = [
            part.text.value
            for part in message.content
            if getattr(part, "type", None) == "text"
        ]
        if parts:
            return "\n".join(parts)
    return None


def loads_strict(text: str) -> dict:
    """Parse a reply that should be a bare JSON object (code fences tolerated)."""
    data = json.loads(_FENCE_RE.sub("", text.strip()))
    if not isinstance(data, dict):
        raise ValueError("reply is JSON but not an object")
    return data


def extract_results_object(text: str) -> dict | None:
    """Best-effort: find the outermost `{...}` block mentioning "results"."""
    match = _RESULTS_OBJECT_RE.search(text)
    if match is None:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def json_schema_format(model: type[BaseModel], name: str) -> dict:
    """`response_format` payload that pins a reply to `model`'s strict schema."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "schema": model.model_json_schema(),
            "strict": True,
        },
    }

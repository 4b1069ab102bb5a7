import json
from pathlib import Path
from typing import Any, Dict, List


SETTINGS_VERSION = 1

DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "hosts": [
        {"id": "host-local", "url": "http://127.0.0.1:11434"},
    ],
    "persist_data_locally": True,
    "enable_roles": True,
    "allow_same_model_multi_chat": True,
    "enable_message_streaming": False,
    "chat_config": {
        "enabled": False,
        "pre_prompt": "",
        "post_prompt": "",
        "max_output_length": None,
    },
    "autonomous": {
        "turn_delay_seconds": 0.4,
        "transcript_window": 24,
    },
}


class SettingsManager:
    """
    Handles loading and persisting the editable configuration file.

    The file is stored as pretty-printed JSON so it can be edited by hand. Host
    entries, feature toggles and the chat configuration block all live here.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._settings: Dict[str, Any] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def settings(self) -> Dict[str, Any]:
        if self._settings is None:
            self._settings = self._load_from_disk()
        return self._settings

    def _load_from_disk(self) -> Dict[str, Any]:
        if not self.path.exists():
            self._write(DEFAULT_SETTINGS)
            return json.loads(json.dumps(DEFAULT_SETTINGS))
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        # Merge with defaults to backfill new keys without overwriting manual edits.
        merged = json.loads(json.dumps(DEFAULT_SETTINGS))
        _deep_update(merged, data)
        merged["version"] = SETTINGS_VERSION
        return merged

    def save(self, payload: Dict[str, Any]) -> None:
        config = json.loads(json.dumps(self.settings))
        _deep_update(config, payload)
        self._write(config)
        self._settings = config

    def flag(self, name: str) -> bool:
        return bool(self.settings.get(name, DEFAULT_SETTINGS.get(name)))

    def hosts(self) -> List[Dict[str, str]]:
        entries = self.settings.get("hosts") or []
        return [
            {"id": str(entry["id"]), "url": str(entry["url"])}
            for entry in entries
            if isinstance(entry, dict) and entry.get("id") and entry.get("url")
        ]

    def set_hosts(self, hosts: List[Dict[str, str]]) -> None:
        # Lists are replaced wholesale by _deep_update.
        self.save({"hosts": [dict(host) for host in hosts]})

    def autonomous_option(self, name: str) -> Any:
        block = self.settings.get("autonomous") or {}
        return block.get(name, DEFAULT_SETTINGS["autonomous"][name])

    def _write(self, data: Dict[str, Any]) -> None:
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """
    Recursively update a mapping, preserving nested structures.
    """
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value

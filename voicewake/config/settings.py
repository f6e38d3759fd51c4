from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel


class AudioSettings(BaseModel):
    sample_rate: int
    channels: int
    device_input: str
    vad_frame_ms: int
    vad_aggressiveness: int


class LanguageSettings(BaseModel):
    stt_lang: str


class ModelSettings(BaseModel):
    stt: str


class WakeSettings(BaseModel):
    triggers: list[str]
    triggers_file: Optional[str] = None
    min_post_trigger_gap_s: float = 0.45
    restart_delay_ms: int = 700
    watch_interval_s: float = 2.0


class TimeoutSettings(BaseModel):
    stt_finalize_ms: int
    partial_interval_ms: int
    max_utterance_ms: int


class AppSettings(BaseModel):
    audio: AudioSettings
    language: LanguageSettings
    models: ModelSettings
    wake: WakeSettings
    timeouts: TimeoutSettings


_DEF_YAML = Path(__file__).with_name("default.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _merge_env(overrides: Dict[str, Any]) -> Dict[str, Any]:
    wake = overrides.setdefault("wake", {})

    triggers = os.getenv("VOICEWAKE_TRIGGERS")
    if triggers is not None:
        wake["triggers"] = [t for t in triggers.split(",") if t.strip()]

    triggers_file = os.getenv("VOICEWAKE_TRIGGERS_FILE")
    if triggers_file:
        wake["triggers_file"] = triggers_file

    min_gap = os.getenv("VOICEWAKE_MIN_GAP_S")
    if min_gap:
        wake["min_post_trigger_gap_s"] = float(min_gap)

    restart_ms = os.getenv("VOICEWAKE_RESTART_MS")
    if restart_ms:
        wake["restart_delay_ms"] = int(restart_ms)

    return overrides


def load_settings(path: Optional[Path] = None) -> AppSettings:
    data = _load_yaml(path or _DEF_YAML)
    data = _merge_env(data)
    return AppSettings(**data)

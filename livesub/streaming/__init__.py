# coding=utf-8

from .broadcast import SubtitleBroadcast, SubtitleConfig, SubtitleSnapshot
from .json_codec import ConfigUpdate, JsonFieldError, get_string_field, json_bool, json_str, parse_config_update
from .pipeline import CaptionPipeline, CycleOutcome, PipelineSettings, PipelineTrace
from .stability import FilterDecision, TranscriptStabilityFilter, normalize_for_dedup
from .translation_memo import TranslationMemo
from .voice_gate import AdaptiveVoiceGate, GateDecision
from .window import CaptureBackpressure, CaptureDecision, WindowAssembler

__all__ = [
    "AdaptiveVoiceGate",
    "CaptionPipeline",
    "CaptureBackpressure",
    "CaptureDecision",
    "ConfigUpdate",
    "CycleOutcome",
    "FilterDecision",
    "GateDecision",
    "JsonFieldError",
    "PipelineSettings",
    "PipelineTrace",
    "SubtitleBroadcast",
    "SubtitleConfig",
    "SubtitleSnapshot",
    "TranscriptStabilityFilter",
    "TranslationMemo",
    "WindowAssembler",
    "get_string_field",
    "json_bool",
    "json_str",
    "normalize_for_dedup",
    "parse_config_update",
]

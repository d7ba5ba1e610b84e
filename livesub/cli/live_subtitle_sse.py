# coding=utf-8
# Copyright 2026 The Alibaba Qwen team.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Live microphone subtitles pushed to browsers over Server-Sent Events.
"""
import argparse
import asyncio
import http.client
import logging
import os
import socket
import threading
import urllib.error
import urllib.request
from contextlib import suppress
from typing import Any, AsyncIterator, Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, Response, StreamingResponse
from livesub.audio.languages import is_valid_source_lang, source_languages
from livesub.streaming.broadcast import KEEPALIVE_SEC, SubtitleBroadcast, SubtitleSnapshot
from livesub.streaming.json_codec import (
    JsonFieldError,
    get_string_field,
    json_bool,
    json_object,
    json_str,
    parse_config_update,
)
from livesub.streaming.pipeline import CaptionPipeline, PipelineSettings, PipelineTrace

logger = logging.getLogger(__name__)
KEEPALIVE_EVENT = ": keepalive\n\n"
MAX_BEAM_SIZE = 8

INDEX_HTML_TEMPLATE = r"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>Live Subtitle</title>
  <style>
    * { margin: 0; padding: 0; box-sizing: border-box; }
    body {
      background: #00ff00;
      color: #fff;
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", system-ui, sans-serif;
      height: 100vh;
      display: flex;
      flex-direction: column;
      justify-content: flex-end;
      align-items: center;
      padding: 2rem;
      overflow: hidden;
    }
    #subtitle-container { text-align: center; max-width: 92%; transition: opacity 0.35s ease; }
    #subtitle {
      font-size: 2.7rem;
      font-weight: 700;
      line-height: 1.35;
      word-wrap: break-word;
      white-space: pre-wrap;
      text-shadow: -2px -2px 0 rgba(0,0,0,.95), 2px -2px 0 rgba(0,0,0,.95),
                   -2px 2px 0 rgba(0,0,0,.95), 2px 2px 0 rgba(0,0,0,.95), 0 0 8px rgba(0,0,0,.9);
    }
    #original { display: none; margin-top: .45rem; font-size: 1.1rem; opacity: .82; text-shadow: 0 0 6px rgba(0,0,0,.9); }
    #original.show-original { display: block; }
    #language-badge {
      display: none; margin-bottom: .55rem; padding: .2rem .55rem; border-radius: 6px;
      font-size: .78rem; background: rgba(0,0,0,.55); border: 1px solid rgba(255,255,255,.35);
    }
    #status { display: none; position: fixed; top: 1rem; right: 1rem; font-size: .82rem; }
    #settings-panel {
      display: none; position: fixed; top: 1rem; left: 1rem; min-width: 235px; padding: .75rem;
      border-radius: 9px; background: rgba(0,0,0,.55); border: 1px solid rgba(255,255,255,.35);
      gap: .6rem; flex-direction: column;
    }
    .settings-row { display: flex; flex-direction: column; gap: .22rem; }
    .settings-row label { font-size: .78rem; opacity: .9; }
    .settings-row select {
      background: rgba(20,20,20,.8); color: #fff; border: 1px solid rgba(255,255,255,.35);
      border-radius: 6px; padding: .4rem .48rem; font-size: .86rem;
    }
    body.settings-mode #status { display: block; }
    body.settings-mode #settings-panel { display: flex; }
    body.settings-mode #language-badge { display: inline-block; }
    .connected { color: #4ade80; }
    .disconnected { color: #f87171; }
    .fade { opacity: .26; }
  </style>
</head>
<body>
  <div id="status" class="disconnected">&#9679; Disconnected</div>
  <div id="settings-panel">
    <div class="settings-row">
      <label for="source-lang-select">Source language</label>
      <select id="source-lang-select"><option value="auto">Loading...</option></select>
    </div>
    <div class="settings-row" id="target-lang-row">
      <label for="target-lang-select">Translate to</label>
      <select id="target-lang-select"><option value="">Translate off</option></select>
    </div>
  </div>
  <div id="subtitle-container">
    <div id="language-badge"></div>
    <div id="subtitle"></div>
    <div id="original"></div>
  </div>
  <script>
    const subtitle = document.getElementById("subtitle");
    const original = document.getElementById("original");
    const langBadge = document.getElementById("language-badge");
    const container = document.getElementById("subtitle-container");
    const statusEl = document.getElementById("status");
    const sourceLangSelect = document.getElementById("source-lang-select");
    const targetLangSelect = document.getElementById("target-lang-select");
    const targetLangRow = document.getElementById("target-lang-row");
    const settingsMode = new URLSearchParams(window.location.search).get("settings") === "1";
    const FADE_MS = __FADE_MS__;
    if (settingsMode) document.body.classList.add("settings-mode");
    let fadeTimer = null;

    function fillSelect(select, items, first) {
      while (select.firstChild) select.removeChild(select.firstChild);
      if (first) items = [first].concat(items);
      for (const item of items) {
        const opt = document.createElement("option");
        opt.value = item.code;
        opt.textContent = item.name;
        select.appendChild(opt);
      }
    }

    async function postConfig(patch) {
      await fetch("/api/config", {
        method: "POST",
        headers: {"Content-Type": "application/json"},
        body: JSON.stringify(patch),
      });
    }

    async function loadSettings() {
      if (!settingsMode) return;
      try {
        const cfg = await (await fetch("/api/config")).json();
        const sources = await (await fetch("/api/source-languages")).json();
        fillSelect(sourceLangSelect, Array.isArray(sources) ? sources : [], null);
        sourceLangSelect.value = cfg.source_lang || "auto";
        if (!cfg.translate_enabled) {
          targetLangRow.style.display = "none";
          return;
        }
        const targets = await (await fetch("/api/languages")).json();
        fillSelect(targetLangSelect, Array.isArray(targets) ? targets : [], {code: "", name: "Translate off"});
        targetLangSelect.value = cfg.target_lang || "";
      } catch (e) {
        targetLangRow.style.display = "none";
      }
    }

    sourceLangSelect.addEventListener("change", () => postConfig({source_lang: sourceLangSelect.value}).catch(() => {}));
    targetLangSelect.addEventListener("change", () => postConfig({target_lang: targetLangSelect.value}).catch(() => {}));

    function render(data) {
      if (!data.text) return;
      if (data.translated) {
        subtitle.textContent = data.translated;
        original.textContent = data.text;
        if (settingsMode) original.classList.add("show-original");
      } else {
        subtitle.textContent = data.text;
        original.textContent = "";
        original.classList.remove("show-original");
      }
      if (data.language) langBadge.textContent = data.language.toUpperCase();
      container.classList.remove("fade");
      if (fadeTimer) clearTimeout(fadeTimer);
      fadeTimer = setTimeout(() => container.classList.add("fade"), FADE_MS);
    }

    function connect() {
      const es = new EventSource("/events");
      es.onopen = () => {
        statusEl.textContent = "● Connected";
        statusEl.className = "connected";
      };
      es.onmessage = (event) => {
        try { render(JSON.parse(event.data)); } catch (e) { /* ignore */ }
      };
      es.onerror = () => {
        statusEl.textContent = "● Disconnected";
        statusEl.className = "disconnected";
        es.close();
        setTimeout(connect, 2000);
      };
    }

    loadSettings();
    connect();
  </script>
</body>
</html>
"""


class LibreTranslateClient:
    """
    Translation client for a LibreTranslate-compatible HTTP API.

    Failures never propagate: the caller gets an empty string and a warning is logged.
    """

    def __init__(self, base_url: str, timeout_sec: float = 3.0) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        if not self.base_url:
            raise ValueError("translate url is empty")
        self.timeout_sec = max(0.5, float(timeout_sec))

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def translate(self, text: str, source_language: str, target_language: str) -> str:
        src = str(text or "").strip()
        if not src:
            return ""
        body = json_object(
            json_str("q", src),
            json_str("source", source_language),
            json_str("target", target_language),
        ).encode("utf-8")
        req = urllib.request.Request(
            self._url("/translate"),
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                status = int(getattr(resp, "status", 200) or 200)
                raw = resp.read().decode("utf-8", errors="replace")
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            logger.warning("translation request failed url=%s err=%s", self.base_url, e)
            return ""
        if status != 200:
            logger.warning("translation request failed url=%s status=%d", self.base_url, status)
            return ""
        try:
            return get_string_field(raw, "translatedText")
        except JsonFieldError as e:
            logger.warning("unexpected translation response: %s", e)
            return ""

    def languages(self) -> str:
        try:
            with urllib.request.urlopen(self._url("/languages"), timeout=self.timeout_sec) as resp:
                if int(getattr(resp, "status", 200) or 200) != 200:
                    return "[]"
                return resp.read().decode("utf-8", errors="replace")
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            logger.warning("translation languages request failed url=%s err=%s", self.base_url, e)
            return "[]"


def _format_sse_event(snapshot: SubtitleSnapshot) -> str:
    payload = json_object(
        json_str("text", snapshot.text),
        json_str("translated", snapshot.translated),
        json_str("language", snapshot.language),
    )
    return f"data: {payload}\n\n"


def _source_languages_json(multilingual: bool) -> str:
    items = [json_object(json_str("code", x["code"]), json_str("name", x["name"])) for x in source_languages(multilingual)]
    return "[" + ",".join(items) + "]"


def _json_response(content: str, status_code: int = 200) -> Response:
    return Response(
        content=content,
        status_code=status_code,
        media_type="application/json",
        headers={"Access-Control-Allow-Origin": "*"},
    )


def _create_app(
    args: argparse.Namespace,
    broadcast: SubtitleBroadcast,
    translator: Optional[LibreTranslateClient] = None,
    multilingual: bool = True,
) -> FastAPI:
    app = FastAPI(title="Live Subtitle SSE")
    keepalive_sec = float(getattr(args, "keepalive_sec", KEEPALIVE_SEC) or KEEPALIVE_SEC)
    fade_ms = int(getattr(args, "fade_ms", 5000) or 5000)
    source_languages_json = _source_languages_json(multilingual)

    @app.get("/")
    async def index() -> HTMLResponse:
        return HTMLResponse(INDEX_HTML_TEMPLATE.replace("__FADE_MS__", str(fade_ms)))

    @app.get("/events")
    async def events() -> StreamingResponse:
        async def _stream() -> AsyncIterator[str]:
            async for snap in broadcast.subscribe_async(catch_up=True, keepalive_sec=keepalive_sec):
                if snap is None:
                    yield KEEPALIVE_EVENT
                else:
                    yield _format_sse_event(snap)

        logger.info("sse client connected subscribers=%d", broadcast.listener_count() + 1)

        return StreamingResponse(
            _stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Access-Control-Allow-Origin": "*"},
        )

    @app.get("/api/config")
    async def get_config() -> Response:
        cfg = broadcast.config()
        return _json_response(
            json_object(
                json_str("source_lang", cfg.source_lang),
                json_str("target_lang", cfg.target_lang),
                json_bool("translate_enabled", translator is not None),
            )
        )

    @app.post("/api/config")
    async def post_config(request: Request) -> Response:
        raw = await request.body()
        try:
            update = parse_config_update(raw.decode("utf-8"))
        except (UnicodeDecodeError, JsonFieldError) as e:
            logger.warning("rejected config update: %s", e)
            return _json_response('{"ok":false,"error":"invalid config"}', status_code=400)
        if update.has_source_lang and not is_valid_source_lang(update.source_lang):
            return _json_response('{"ok":false,"error":"invalid source_lang"}', status_code=400)

        cfg = broadcast.update_config(source_lang=update.source_lang, target_lang=update.target_lang)
        logger.info("config updated source_lang=%s target_lang=%s", cfg.source_lang, cfg.target_lang)
        return _json_response('{"ok":true}')

    @app.get("/api/source-languages")
    async def get_source_languages() -> Response:
        return _json_response(source_languages_json)

    @app.get("/api/languages")
    async def get_languages() -> Response:
        if translator is None:
            return _json_response("[]")
        return _json_response(await asyncio.to_thread(translator.languages))

    return app


def _bounded_int(name: str, lo: int, hi: int) -> Callable[[str], int]:
    def _parse(raw: str) -> int:
        try:
            value = int(str(raw), 10)
        except ValueError:
            value = None
        if value is None or value < lo or value > hi:
            raise argparse.ArgumentTypeError(f"invalid value for {name}: '{raw}' (expected {lo}..{hi})")
        return value

    return _parse


def _bounded_float(name: str, lo: float, hi: float) -> Callable[[str], float]:
    def _parse(raw: str) -> float:
        try:
            value = float(str(raw))
        except ValueError:
            value = None
        if value is None or value != value or value < lo or value > hi:
            raise argparse.ArgumentTypeError(f"invalid value for {name}: '{raw}' (expected {lo:.2f}..{hi:.2f})")
        return value

    return _parse


def _default_threads() -> int:
    return max(1, min(4, int(os.cpu_count() or 1)))


def _assert_port_bindable(host: str, port: int) -> None:
    bind_host = str(host or "0.0.0.0").strip() or "0.0.0.0"
    bind_port = int(port)
    try:
        addr_infos = socket.getaddrinfo(
            bind_host,
            bind_port,
            family=socket.AF_UNSPEC,
            type=socket.SOCK_STREAM,
            proto=socket.IPPROTO_TCP,
            flags=socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        raise RuntimeError(f"invalid bind host '{bind_host}': {exc}") from exc

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in addr_infos:
        probe = socket.socket(family, socktype, proto)
        with suppress(OSError):
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(sockaddr)
            return
        except OSError as exc:
            last_error = exc
        finally:
            probe.close()
    raise RuntimeError(f"bind {bind_host}:{bind_port} is not available: {last_error}")


def _validate_startup(args: argparse.Namespace) -> None:
    if not is_valid_source_lang(args.language):
        raise ValueError(f"unknown language '{args.language}'")
    if int(args.capture) >= 0 and str(args.capture_name or ""):
        raise ValueError("--capture and --capture-name are mutually exclusive")


def _settings_from_args(args: argparse.Namespace) -> PipelineSettings:
    return PipelineSettings(
        step_ms=args.step,
        length_ms=args.length,
        keep_ms=args.keep,
        vad_threshold=args.vad_thold,
        use_vad=args.vad,
        beam_size=args.beam_size,
        max_tokens=args.max_tokens,
        temperature_inc=args.temperature_inc,
    ).normalized()


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Live Subtitle: microphone -> Whisper -> SSE captions")
    p.add_argument("--model", default="large-v3-turbo", help="faster-whisper model name or local path")
    p.add_argument("--host", default="0.0.0.0", help="Bind host")
    p.add_argument("--port", type=_bounded_int("--port", 1, 65535), default=8080, help="HTTP server port")
    p.add_argument("--step", type=_bounded_int("--step", 1, 3600000), default=1000, help="Audio step size in ms")
    p.add_argument("--length", type=_bounded_int("--length", 1, 3600000), default=4000, help="Audio length in ms")
    p.add_argument("--keep", type=_bounded_int("--keep", 0, 3600000), default=200, help="Audio keep in ms")
    p.add_argument(
        "--threads",
        type=_bounded_int("--threads", 1, 4096),
        default=_default_threads(),
        help="Inference threads",
    )
    p.add_argument(
        "--capture",
        type=_bounded_int("--capture", -1, 2**31 - 1),
        default=-1,
        help="Audio device ID (-1 = default device)",
    )
    p.add_argument("--capture-name", default="", help="Capture device name (exact or unique partial match)")
    p.add_argument("--language", default="ko", help="Source language code or 'auto'")
    p.add_argument(
        "--vad-thold",
        type=_bounded_float("--vad-thold", 0.0, 1.0),
        default=0.6,
        help="VAD energy threshold (0.0..1.0)",
    )
    p.add_argument(
        "--beam-size",
        type=_bounded_int("--beam-size", 1, MAX_BEAM_SIZE),
        default=1,
        help=f"Beam search size (1..{MAX_BEAM_SIZE}, 1 = greedy)",
    )
    p.add_argument(
        "--max-tokens",
        type=_bounded_int("--max-tokens", 0, 1024),
        default=32,
        help="Max tokens per window (0 = unlimited)",
    )
    p.add_argument(
        "--temperature-inc",
        type=_bounded_float("--temperature-inc", 0.0, 2.0),
        default=0.0,
        help="Temperature fallback step",
    )
    p.add_argument(
        "--vad",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Energy-based voice gating in front of the recognizer (--no-vad to disable)",
    )
    p.add_argument("--translate-url", default="", help="LibreTranslate server URL (empty disables translation)")
    p.add_argument(
        "--translate-timeout-sec",
        type=_bounded_float("--translate-timeout-sec", 0.5, 60.0),
        default=3.0,
        help="Timeout seconds for each translation request",
    )
    p.add_argument("--gpu", default=True, action=argparse.BooleanOptionalAction, help="Use the GPU (--no-gpu)")
    p.add_argument(
        "--flash-attn",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Use flash attention on GPU (--no-flash-attn)",
    )
    p.add_argument(
        "--keepalive-sec",
        type=_bounded_float("--keepalive-sec", 1.0, 300.0),
        default=KEEPALIVE_SEC,
        help="Seconds between SSE keepalive comments when nothing new is published",
    )
    p.add_argument(
        "--trace-log",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Emit structured pipeline_trace log lines for gate/filter/publish decisions",
    )
    p.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    return p.parse_args(argv)


class _CaptionServer(uvicorn.Server):
    def __init__(self, config: uvicorn.Config, on_exit: Callable[[], None]) -> None:
        super().__init__(config)
        self._on_exit = on_exit

    def handle_exit(self, sig: int, frame: Any) -> None:
        # open SSE streams only end once the broadcast stops running
        self._on_exit()
        super().handle_exit(sig, frame)


def main() -> None:
    from livesub.audio.capture import SoundDeviceCapture, resolve_capture_id_by_name
    from livesub.audio.recognizer import WhisperRecognizer

    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        _validate_startup(args)
        if args.capture_name:
            args.capture = resolve_capture_id_by_name(args.capture_name)
            logger.info("capture-name '%s' resolved to --capture %d", args.capture_name, args.capture)
        _assert_port_bindable(args.host, args.port)
    except (RuntimeError, ValueError) as exc:
        logger.error("startup guard failed: %s", exc)
        raise SystemExit(2) from exc

    settings = _settings_from_args(args)
    logger.info(
        "model=%s language=%s step=%dms length=%dms keep=%dms threads=%d beam=%d max_tokens=%d temperature_inc=%.2f vad=%s",
        args.model,
        args.language,
        settings.step_ms,
        settings.length_ms,
        settings.keep_ms,
        args.threads,
        settings.beam_size,
        settings.max_tokens,
        settings.temperature_inc,
        settings.use_vad,
    )

    try:
        recognizer = WhisperRecognizer(
            model_path=args.model,
            threads=args.threads,
            use_gpu=args.gpu,
            flash_attn=args.flash_attn,
        )
    except Exception as exc:
        logger.error("failed to load model '%s': %s", args.model, exc)
        raise SystemExit(2) from exc
    print("Model loaded.")

    translator: Optional[LibreTranslateClient] = None
    if args.translate_url:
        translator = LibreTranslateClient(args.translate_url, timeout_sec=args.translate_timeout_sec)
        logger.info("translation: %s", translator.base_url)

    broadcast = SubtitleBroadcast(source_lang=args.language)
    capture = SoundDeviceCapture(capture_id=args.capture, capacity_ms=max(settings.length_ms, 3 * settings.step_ms))
    pipeline = CaptionPipeline(
        capture,
        recognizer,
        broadcast,
        settings=settings,
        translator=translator,
        trace=PipelineTrace(enabled=args.trace_log),
    )
    app = _create_app(args, broadcast, translator=translator, multilingual=recognizer.is_multilingual)

    stop = threading.Event()

    def _request_stop() -> None:
        stop.set()
        broadcast.shutdown()

    server = _CaptionServer(
        uvicorn.Config(app, host=args.host, port=args.port, log_level=args.log_level),
        on_exit=_request_stop,
    )

    def _run_pipeline() -> None:
        try:
            pipeline.run(stop)
        except Exception:
            logger.exception("caption pipeline crashed")
        finally:
            server.should_exit = True

    worker = threading.Thread(target=_run_pipeline, name="caption-pipeline", daemon=True)
    worker.start()
    logger.info("listening on http://localhost:%d", args.port)
    try:
        server.run()
    finally:
        _request_stop()
        worker.join(timeout=10.0)
        logger.info("shut down")


if __name__ == "__main__":
    main()

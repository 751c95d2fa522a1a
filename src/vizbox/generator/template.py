"""Visualization generator that runs inside a sandbox.

This file is shipped verbatim into every sandbox as its entrypoint, with the
request JSON spliced into ``REQUEST_JSON``.  It must stay self-contained:
only the standard library, ``fastapi``, ``uvicorn`` and ``anthropic``.

At startup the HTTP server comes up first and generation runs as a
background task.  The task is the only writer of ``GenerationState``; the
handlers only read it, so ``/status`` answers immediately at any phase.

Routes:
    ``GET /``        final HTML once ready, otherwise a self-refreshing page.
    ``GET /status``  ``{"phase", "elapsed", "ready", "error"}``.
    ``GET /health``  ``{"status": "ok" | "error", "error"}``.

Environment:
    ``ANTHROPIC_API_KEY``  read by the Anthropic client; never logged.
    ``VIZBOX_MODEL``       default model when the request names none.
    ``VIZBOX_HOST`` / ``VIZBOX_PORT``  bind address.
"""

from __future__ import annotations

import asyncio
import contextlib
import html as html_lib
import json
import os
import re
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

REQUEST_JSON = "__VIZBOX_REQUEST__"

DEFAULT_MODEL = "claude-sonnet-4-6"
MAX_TOKENS = 16000
TEMPERATURE = 0.3
SAMPLE_RECORDS = 10

PHASES = (
    "initializing",
    "parsing_request",
    "creating_client",
    "calling_api",
    "parsing_response",
    "ready",
    "error",
)
TERMINAL_PHASES = frozenset({"ready", "error"})

SYSTEM_PROMPT = """Generate a simple HTML/CSS/JavaScript chart visualization. Return ONLY valid JSON:

{
  "html": "<div id='chart'></div>",
  "css": "body{background:#0f0f23;color:#e2e8f0;margin:0;font-family:Arial}#chart{width:100%;height:100vh;padding:20px}",
  "javascript": "WORKING_CHART_CODE"
}

REQUIREMENTS:
1. Use vanilla JavaScript and HTML5 Canvas or SVG for charts
2. NO external libraries - create charts from scratch
3. Dark theme: background #0f0f23, text #e2e8f0, bars #60a5fa
4. Make it responsive and interactive
5. Include hover effects and labels
6. Transform the provided data into a working visualization
7. Use canvas.getContext('2d') for drawing

DATA FILTERING REQUIREMENTS:
8. ALWAYS respect user-specified time periods, date ranges, and record limits
9. Use JavaScript array methods (filter, slice, etc.) to limit data BEFORE creating the visualization
10. If the user mentions "last X days/months", "recent", "top N", "between dates", etc. - implement proper filtering
11. Do NOT display all available data unless specifically requested
12. Include clear chart titles and labels indicating what time period or data subset is shown
13. When filtering by dates, parse date strings properly and use Date objects for comparison

Create a complete working chart using only native browser APIs."""

_DATE_NAME_HINTS = ("date", "time", "created", "updated", "modified", "timestamp")
_DATE_VALUE_PATTERNS = (
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
    re.compile(r"^\d{2}/\d{2}/\d{4}"),
)
_JSON_PATTERNS = (
    re.compile(r'\{[\s\S]*"javascript"[\s\S]*\}'),
    re.compile(r"\{[\s\S]*\}"),
)

_CORS_ORIGINS = ["*"]


# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------


@dataclass
class GenerationState:
    """Progress of the background generation task."""

    phase: str = "initializing"
    started: float = field(default_factory=time.monotonic)
    html: str | None = None
    error: str | None = None

    def advance(self, phase: str) -> None:
        if phase not in PHASES:
            raise ValueError(f"Unknown phase: {phase}")
        if self.phase in TERMINAL_PHASES:
            return
        self.phase = phase

    def finish(self, html: str) -> None:
        self.html = html
        self.advance("ready")

    def fail(self, error: str) -> None:
        if self.phase in TERMINAL_PHASES:
            return
        self.error = error
        self.phase = "error"

    @property
    def ready(self) -> bool:
        return self.phase == "ready"

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "elapsed": int((time.monotonic() - self.started) * 1000),
            "ready": self.ready,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Prompt building and response parsing
# ---------------------------------------------------------------------------


def detect_date_fields(fields: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Return the fields whose name or sample value looks like a date."""
    found = []
    for f in fields:
        name = str(f.get("name", "")).lower()
        sample = str(f.get("sample", ""))
        if any(hint in name for hint in _DATE_NAME_HINTS) or any(
            p.match(sample) for p in _DATE_VALUE_PATTERNS
        ):
            found.append(f)
    return found


def _field_line(f: dict[str, Any]) -> str:
    return f"- {f.get('name')} ({f.get('type')}): {json.dumps(f.get('sample'))}"


def build_user_prompt(request: dict[str, Any]) -> str:
    api_data = request.get("apiData") or {}
    structure = api_data.get("structure") or {}
    fields = structure.get("fields") or []
    records = api_data.get("data") or []
    total = structure.get("totalRecords", len(records))

    parts = [
        "Create a data visualization with the following specifications:",
        "",
        f"Data Source: {api_data.get('url', 'unknown')}",
        f"Total Records: {total}",
        "",
        "Data Structure:",
        *(_field_line(f) for f in fields),
    ]
    date_fields = detect_date_fields(fields)
    if date_fields:
        parts += ["", "Detected Date/Time Fields:", *(_field_line(f) for f in date_fields)]
    parts += [
        "",
        f"Sample Data (first {SAMPLE_RECORDS} records):",
        json.dumps(records[:SAMPLE_RECORDS], indent=2),
        "",
        f"User Request: {request.get('prompt', '')}",
        "",
        "IMPORTANT DATA HANDLING INSTRUCTIONS:",
        "1. If the user specifies a time period, date range, or record limit, "
        "you MUST implement filtering in your JavaScript code",
        "2. Use filter(), slice(), or other array methods to limit the data before visualization",
        f"3. Do NOT display all {total} records unless specifically requested",
        "4. Include clear labels showing what data period/subset is being displayed",
    ]
    current = request.get("currentCode")
    if current:
        parts += [
            "",
            "Current Visualization Code to Modify:",
            f"HTML: {current.get('html', '')}",
            f"CSS: {current.get('css', '')}",
            f"JavaScript: {current.get('javascript', '')}",
            "",
            "Please modify the existing code based on the user's request.",
        ]
    return "\n".join(parts)


def fallback_chart() -> dict[str, str]:
    """Static sample bar chart used when the model reply holds no usable code."""
    return {
        "html": '<div id="chart"><canvas id="chartCanvas"></canvas></div>',
        "css": (
            "body{background:#0f0f23;color:#e2e8f0;margin:0;font-family:Arial}"
            "#chart{width:100%;height:100vh;padding:20px;display:flex;"
            "justify-content:center;align-items:center}"
            "canvas{max-width:100%;max-height:100%;background:rgba(30,30,60,0.3);border-radius:8px}"
        ),
        "javascript": """
const canvas = document.getElementById('chartCanvas');
const ctx = canvas.getContext('2d');
const data = [
  { name: 'A', value: 400 },
  { name: 'B', value: 300 },
  { name: 'C', value: 300 },
  { name: 'D', value: 200 }
];
const drawChart = () => {
  const width = canvas.width, height = canvas.height;
  const margin = { top: 40, right: 30, bottom: 60, left: 60 };
  const chartWidth = width - margin.left - margin.right;
  const chartHeight = height - margin.top - margin.bottom;
  ctx.clearRect(0, 0, width, height);
  const maxValue = Math.max(...data.map(d => d.value));
  const barWidth = chartWidth / data.length * 0.8;
  const barSpacing = chartWidth / data.length * 0.2;
  data.forEach((item, index) => {
    const barHeight = (item.value / maxValue) * chartHeight;
    const x = margin.left + index * (barWidth + barSpacing) + barSpacing / 2;
    const y = margin.top + chartHeight - barHeight;
    ctx.fillStyle = '#60a5fa';
    ctx.fillRect(x, y, barWidth, barHeight);
    ctx.fillStyle = '#e2e8f0';
    ctx.font = '14px Arial';
    ctx.textAlign = 'center';
    ctx.fillText(item.name, x + barWidth / 2, height - margin.bottom + 20);
    ctx.fillText(item.value, x + barWidth / 2, y - 10);
  });
  ctx.fillStyle = '#e2e8f0';
  ctx.font = 'bold 16px Arial';
  ctx.textAlign = 'center';
  ctx.fillText('Sample Data Visualization', width / 2, 25);
};
const resizeCanvas = () => {
  const container = canvas.parentElement;
  canvas.width = Math.min(container.clientWidth - 40, 800);
  canvas.height = Math.min(container.clientHeight - 40, 500);
  drawChart();
};
resizeCanvas();
window.addEventListener('resize', resizeCanvas);
""",
    }


def parse_response(text: str) -> dict[str, str]:
    """Extract ``{html, css, javascript}`` from a model reply.

    Falls back to ``fallback_chart()`` when no JSON object with all three
    keys can be found.
    """
    for pattern in _JSON_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and all(parsed.get(k) for k in ("html", "css", "javascript")):
            return {
                "html": str(parsed["html"]).strip(),
                "css": str(parsed["css"]),
                "javascript": re.sub(r"</?script[^>]*>", "", str(parsed["javascript"])).strip(),
            }
    return fallback_chart()


def build_html(code: dict[str, str]) -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Data Visualization</title>
    <style>
{code["css"]}
    </style>
</head>
<body>
    {code["html"]}
    <script>
{code["javascript"]}
    </script>
</body>
</html>"""


def pending_page(state: GenerationState) -> str:
    phase = html_lib.escape(state.phase.replace("_", " "))
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta http-equiv="refresh" content="2">
    <title>Generating visualization</title>
    <style>body{{background:#0f0f23;color:#e2e8f0;font-family:Arial;display:flex;
    justify-content:center;align-items:center;height:100vh;margin:0}}</style>
</head>
<body><p>Generating visualization&hellip; ({phase})</p></body>
</html>"""


def error_page(state: GenerationState) -> str:
    error = html_lib.escape(state.error or "Unknown error")
    return f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>Generation failed</title></head>
<body style="background:#0f0f23;color:#f87171;font-family:Arial">
<p>Visualization generation failed: {error}</p>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def _default_client() -> Any:
    from anthropic import AsyncAnthropic

    return AsyncAnthropic()


def _reply_text(response: Any) -> str:
    texts = [
        getattr(block, "text", "")
        for block in getattr(response, "content", None) or []
        if getattr(block, "type", None) == "text"
    ]
    return "".join(texts)


async def generate(
    state: GenerationState,
    raw_request: str,
    *,
    client_factory: Callable[[], Any] | None = None,
) -> None:
    """Run the whole generation, recording progress and outcome in *state*."""
    try:
        state.advance("parsing_request")
        request = json.loads(raw_request)
        if not isinstance(request, dict):
            raise ValueError("Request payload must be a JSON object")

        state.advance("creating_client")
        client = (client_factory or _default_client)()

        state.advance("calling_api")
        model = request.get("model") or os.environ.get("VIZBOX_MODEL") or DEFAULT_MODEL
        response = await client.messages.create(
            model=model,
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": build_user_prompt(request)}],
        )

        state.advance("parsing_response")
        text = _reply_text(response)
        if not text:
            raise ValueError("Unexpected response format from AI")
        state.finish(build_html(parse_response(text)))
    except asyncio.CancelledError:
        state.fail("Generation cancelled")
        raise
    except Exception as exc:
        state.fail(str(exc) or type(exc).__name__)


# ---------------------------------------------------------------------------
# HTTP server
# ---------------------------------------------------------------------------


def create_app(
    state: GenerationState,
    raw_request: str,
    *,
    client_factory: Callable[[], Any] | None = None,
) -> FastAPI:
    """Build the sandbox app; generation starts with the app's lifespan."""

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        task = asyncio.create_task(generate(state, raw_request, client_factory=client_factory))
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="vizbox generator", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.get("/")
    @app.get("/index.html")
    async def index() -> HTMLResponse:
        if state.ready and state.html is not None:
            return HTMLResponse(state.html)
        if state.phase == "error":
            return HTMLResponse(error_page(state), status_code=500)
        return HTMLResponse(pending_page(state))

    @app.get("/status")
    async def status() -> JSONResponse:
        return JSONResponse(state.snapshot())

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "error" if state.error else "ok", "error": state.error})

    return app


def main() -> None:
    import uvicorn

    app = create_app(GenerationState(), REQUEST_JSON)
    uvicorn.run(
        app,
        host=os.environ.get("VIZBOX_HOST", "0.0.0.0"),
        port=int(os.environ.get("VIZBOX_PORT", "8000")),
        log_level="warning",
    )


if __name__ == "__main__":
    main()

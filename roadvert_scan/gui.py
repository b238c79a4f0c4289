#
# roadvert-scan - Eddystone-URL beacon scanner with page previews
#
# Browser front end: a live list of discovered beacon pages with
# Details / Dismiss buttons and a Scan / Rescan control.
#

"""Flask + SocketIO presentation of scan sessions."""

import asyncio
import os
import socket
import sys
import threading
import time
import webbrowser

_HAS_FLASK = False
try:
    from flask import Flask, jsonify, render_template_string
    from flask_socketio import SocketIO
    _HAS_FLASK = True
except ImportError:
    pass

from .metadata import favicon_url
from .session import ScanPermissionError, SessionController

_GUI_HTML = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Roadvert Scanner</title>
<style>
*,*::before,*::after{box-sizing:border-box;margin:0;padding:0}
:root{--red:#e53935;--blue:#1e88e5;--card:#fff;--text:#212121;--dim:#757575}
html,body{min-height:100%;background:var(--blue);color:var(--text);
  font-family:Roboto,'Segoe UI',Helvetica,Arial,sans-serif}

/* ── header bar ────────────────────────────────────────────── */
#header{display:flex;align-items:center;gap:16px;padding:16px 24px;
  background:#fff;box-shadow:0 2px 4px rgba(0,0,0,.2)}
#header .title{color:var(--red);font-weight:700;font-size:22px;flex:1}
#header .stat{color:var(--dim);font-size:13px}
#scan-btn{background:#fff;border:2px solid var(--blue);color:var(--blue);
  border-radius:24px;padding:8px 20px;font-weight:700;cursor:pointer}

/* ── beacon list ──────────────────────────────────────────── */
#list{max-width:760px;margin:0 auto;padding:16px}
.card{display:flex;gap:16px;background:var(--card);border-radius:6px;
  padding:16px;margin:8px 0;box-shadow:0 3px 6px rgba(0,0,0,.25)}
.card img.fav{width:64px;height:64px;flex-shrink:0}
.card .body{flex:1;min-width:0}
.card h3{font-size:20px;margin-bottom:8px;word-break:break-word}
.card p{margin-bottom:8px}
.card a.url{color:var(--blue);word-break:break-all}
.card .actions{margin-top:12px;display:flex;gap:16px}
.card .details{background:var(--blue);color:#fff;border:none;border-radius:4px;
  padding:8px 16px;font-weight:700;cursor:pointer;text-decoration:none}
.card .dismiss{background:#fff;color:var(--red);border:1px solid var(--red);
  border-radius:4px;padding:8px 16px;font-weight:700;cursor:pointer}
#empty{color:#fff;font-size:22px;font-weight:700;text-align:center;
  margin-top:80px;white-space:pre-line}
#error{display:none;background:#b71c1c;color:#fff;text-align:center;padding:8px}
</style>
</head>
<body>
<div id="header">
  <span class="title">Roadvert Scanner</span>
  <span class="stat" id="s-stat"></span>
  <button id="scan-btn">Scan</button>
</div>
<div id="error"></div>
<div id="list"></div>
<div id="empty"></div>

<script src="https://cdn.socket.io/4.7.5/socket.io.min.js"></script>
<script>var WSPORT = {{ port }};</script>
""" + r"""{% raw %}""" + r"""
<script>
(function(){
"use strict";
var socket = io(window.location.protocol+"//"+window.location.hostname+":"+WSPORT, {transports:["websocket","polling"]});
var listEl = document.getElementById("list");
var emptyEl = document.getElementById("empty");
var errEl = document.getElementById("error");
var btn = document.getElementById("scan-btn");

function el(tag, cls, text){
  var e = document.createElement(tag);
  if(cls){ e.className = cls; }
  if(text !== undefined){ e.textContent = text; }
  return e;
}

function render(state){
  var scanning = state.status === "scanning";
  btn.textContent = scanning ? "Rescan" : "Scan";
  document.getElementById("s-stat").textContent =
    state.results.length + " beacon(s)" + (scanning ? " • scanning" : "");
  listEl.innerHTML = "";
  state.results.forEach(function(b, i){
    var card = el("div", "card");
    var fav = el("img", "fav");
    fav.src = b.favicon_url;
    fav.onerror = function(){ fav.style.visibility = "hidden"; };
    card.appendChild(fav);
    var body = el("div", "body");
    body.appendChild(el("h3", null, b.title));
    if(b.description){ body.appendChild(el("p", null, b.description)); }
    var link = el("a", "url", b.url);
    link.href = b.url; link.target = "_blank"; link.rel = "noopener";
    body.appendChild(link);
    var actions = el("div", "actions");
    var details = el("a", "details", "Details");
    details.href = b.url; details.target = "_blank"; details.rel = "noopener";
    var dismiss = el("button", "dismiss", "Dismiss");
    dismiss.onclick = function(){ socket.emit("dismiss", {index: i}); };
    actions.appendChild(details);
    actions.appendChild(dismiss);
    body.appendChild(actions);
    card.appendChild(body);
    listEl.appendChild(card);
  });
  if(state.results.length){
    emptyEl.textContent = "";
  } else if(scanning){
    emptyEl.textContent = "Scanning the roads…";
  } else {
    emptyEl.textContent = "No beacons found yet.\nPress Scan to scan again.";
  }
}

btn.onclick = function(){ errEl.style.display = "none"; socket.emit("rescan"); };
socket.on("beacons", render);
socket.on("scan_error", function(d){
  errEl.textContent = d.message;
  errEl.style.display = "block";
});
fetch("/api/state").then(function(r){ return r.json(); }).then(render);
})();
</script>
""" + r"""{% endraw %}""" + r"""
</body>
</html>
"""


def snapshot(controller: SessionController) -> dict:
    """Serializable view of the current session for the browser."""
    return {
        "status": controller.status.value,
        "results": [
            dict(info.to_dict(), favicon_url=favicon_url(info.url))
            for info in controller.results
        ],
    }


class GuiServer:
    """Flask + SocketIO server presenting a :class:`SessionController`.

    The server runs in its own thread; browser actions are handed to the
    controller's event loop.
    """

    def __init__(self, controller: SessionController, port: int = 5000):
        if not _HAS_FLASK:
            raise ImportError(
                "GUI requires Flask and flask-socketio. "
                "Install with: pip install roadvert-scan[gui]")
        self._controller = controller
        self._port = port
        self._app = Flask(__name__)
        self._app.config['SECRET_KEY'] = os.urandom(24).hex()
        self._sio = SocketIO(self._app, async_mode='threading', cors_allowed_origins='*')
        self._thread = None
        self._lock = threading.Lock()
        self._state: dict = {"status": "idle", "results": []}
        self._setup_routes()
        controller.add_listener(self.emit_state)

    def _setup_routes(self):
        @self._app.route('/')
        def index():
            return render_template_string(_GUI_HTML, port=self._port)

        @self._app.route('/api/state')
        def state():
            with self._lock:
                return jsonify(self._state)

        @self._sio.on('rescan')
        def on_rescan():
            self.request_rescan()

        @self._sio.on('dismiss')
        def on_dismiss(data):
            try:
                index = int(data.get('index'))
            except (AttributeError, TypeError, ValueError):
                return
            self.request_dismiss(index)

    def request_rescan(self):
        """Start a new session on the controller loop (thread-safe)."""
        loop = self._controller.loop
        if loop is None:
            return
        future = asyncio.run_coroutine_threadsafe(self._controller.start(), loop)
        future.add_done_callback(self._rescan_done)

    def _rescan_done(self, future):
        if future.cancelled():
            return
        exc = future.exception()
        if isinstance(exc, ScanPermissionError):
            self._sio.emit('scan_error', {'message': str(exc)})
        elif exc is not None:
            self._sio.emit('scan_error', {'message': f"Scan failed: {exc}"})

    def request_dismiss(self, index: int):
        """Dismiss a result on the controller loop (thread-safe)."""
        loop = self._controller.loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._dismiss, index)

    def _dismiss(self, index: int):
        try:
            self._controller.dismiss(index)
        except IndexError:
            # Stale index from a page that missed an update; resync it
            self.emit_state(self._controller)

    def emit_state(self, controller: SessionController):
        """Push the session list and status to all connected clients."""
        data = snapshot(controller)
        with self._lock:
            self._state = data
        self._sio.emit('beacons', data)

    def start(self):
        """Start the Flask server in a background thread."""
        ready = threading.Event()
        result = {'port': -1}

        def _serve():
            for p in range(self._port, self._port + 11):
                # make sure the port is free before committing
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                try:
                    sock.bind(('0.0.0.0', p))
                    sock.close()
                except OSError:
                    sock.close()
                    continue
                result['port'] = p
                self._port = p
                ready.set()
                try:
                    self._sio.run(self._app, host='0.0.0.0', port=p,
                                  allow_unsafe_werkzeug=True,
                                  log_output=False)
                except OSError:
                    pass
                return
            ready.set()

        self._thread = threading.Thread(target=_serve, daemon=True)
        self._thread.start()

        ready.wait(timeout=5)
        time.sleep(0.3)
        if result['port'] == -1:
            print("Error: Could not find open port for GUI server")
            sys.exit(1)

        url = f"http://localhost:{self._port}"
        print(f"  GUI server started at {url}")
        try:
            webbrowser.open(url)
        except Exception:
            print(f"  Could not open browser — navigate to {url}")

    def stop(self):
        """Signal the SocketIO server to shut down."""
        self._controller.remove_listener(self.emit_state)
        try:
            self._sio.stop()
        except Exception:
            pass

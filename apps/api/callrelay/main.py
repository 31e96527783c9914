"""FastAPI application for peer-to-peer call signaling."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, Response

from .core.config import settings
from .routers import auth as auth_router
from .routers import rtc as rtc_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Call Relay Signaling API", version="0.1.0")

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    logger.info("Allowed origins: %s", ", ".join(settings.cors_allow_origins))

app.include_router(auth_router.router, prefix="/api", tags=["auth"])
app.include_router(rtc_router.router, tags=["signaling"])

HTML_PAGE = """<!DOCTYPE html>
<html lang=\"en\">
<head>
    <meta charset=\"UTF-8\" />
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1.0\" />
    <title>Call Relay</title>
    <script src=\"https://cdn.tailwindcss.com\"></script>
</head>
<body class=\"min-h-screen bg-slate-950 text-slate-100\">
    <div class=\"border-b border-slate-800 bg-slate-900/80 backdrop-blur\">
        <div class=\"mx-auto flex max-w-5xl items-center justify-between px-6 py-4\">
            <div class=\"text-lg font-semibold\">Call Relay</div>
            <div class=\"flex items-center gap-4 text-sm text-slate-400\">
                <span id=\"whoami\"></span>
                <span id=\"connection\" class=\"text-slate-600\">offline</span>
                <button id=\"logoutButton\" class=\"hidden text-slate-400 hover:text-white\">Log out</button>
            </div>
        </div>
    </div>

    <main class=\"mx-auto max-w-5xl px-6 py-8\">
        <section id=\"authPanel\" class=\"mx-auto max-w-sm rounded-2xl border border-slate-800 bg-slate-900/60 p-6\">
            <h2 class=\"text-xl font-semibold\">Sign in</h2>
            <form id=\"authForm\" class=\"mt-4 space-y-3\">
                <input id=\"nameInput\" placeholder=\"Name (register only)\" class=\"w-full rounded-lg border border-slate-700 bg-slate-950 px-3 py-2 text-sm\" />
                <input id=\"emailInput\" type=\"email\" placeholder=\"Email\" required class=\"w-full rounded-lg border border-slate-700 bg-slate-950 px-3 py-2 text-sm\" />
                <input id=\"passwordInput\" type=\"password\" placeholder=\"Password\" required class=\"w-full rounded-lg border border-slate-700 bg-slate-950 px-3 py-2 text-sm\" />
                <div class=\"flex gap-3\">
                    <button data-mode=\"login\" class=\"flex-1 rounded-full bg-emerald-500 px-4 py-2 text-sm font-semibold text-black hover:bg-emerald-400\">Log in</button>
                    <button data-mode=\"register\" class=\"flex-1 rounded-full border border-emerald-400/60 px-4 py-2 text-sm font-semibold text-emerald-300 hover:bg-emerald-400/10\">Register</button>
                </div>
            </form>
            <p id=\"authStatus\" class=\"mt-3 text-sm text-slate-400\"></p>
        </section>

        <div id=\"callPanel\" class=\"hidden grid gap-6 lg:grid-cols-[2fr_1fr]\">
            <section class=\"rounded-2xl border border-slate-800 bg-slate-900/60 p-6\">
                <div class=\"flex flex-wrap items-start justify-between gap-4\">
                    <div>
                        <h2 class=\"text-xl font-semibold\">Call</h2>
                        <p id=\"status\" class=\"text-sm text-slate-400\">Pick someone who is online.</p>
                    </div>
                    <button id=\"hangupButton\" class=\"hidden rounded-full bg-red-500 px-4 py-2 text-sm font-semibold text-white hover:bg-red-400\">End Call</button>
                </div>

                <div id=\"incoming\" class=\"mt-4 hidden items-center justify-between rounded-xl border border-emerald-400/40 bg-emerald-400/5 p-4\">
                    <p id=\"incomingText\" class=\"text-sm\"></p>
                    <div class=\"flex gap-2\">
                        <button id=\"acceptButton\" class=\"rounded-full bg-emerald-500 px-4 py-2 text-sm font-semibold text-black\">Accept</button>
                        <button id=\"rejectButton\" class=\"rounded-full border border-slate-600 px-4 py-2 text-sm\">Reject</button>
                    </div>
                </div>

                <div class=\"mt-6 grid gap-4 md:grid-cols-2\">
                    <video id=\"localVideo\" autoplay playsinline muted class=\"aspect-video w-full rounded-xl bg-black\"></video>
                    <video id=\"remoteVideo\" autoplay playsinline class=\"aspect-video w-full rounded-xl bg-black\"></video>
                </div>
            </section>

            <aside class=\"rounded-2xl border border-slate-800 bg-slate-900/60 p-6\">
                <h2 class=\"text-lg font-semibold\">Online</h2>
                <ul id=\"roster\" class=\"mt-4 space-y-2 text-sm text-slate-400\"></ul>
            </aside>
        </div>
    </main>

    <script>
        const $ = (id) => document.getElementById(id);
        let token = null;
        let me = null;
        let socket = null;
        let iceServers = [];
        let peer = null;
        let localStream = null;
        let peerId = null;
        let pendingOffer = null;

        function setStatus(message) {
            $('status').textContent = message;
        }

        function send(type, payload) {
            if (socket && socket.readyState === WebSocket.OPEN) {
                socket.send(JSON.stringify({ type, payload }));
            }
        }

        async function loadInfo() {
            try {
                const response = await fetch('/api/info');
                const info = await response.json();
                iceServers = info.ice_servers;
                return info.websocket_path;
            } catch (error) {
                console.warn('Could not fetch server info:', error);
                return '/ws';
            }
        }

        async function authenticate(mode) {
            const body = {
                email: $('emailInput').value,
                password: $('passwordInput').value,
            };
            if (mode === 'register') {
                body.name = $('nameInput').value || body.email;
            }
            const response = await fetch(`/api/${mode}`, {
                method: 'POST',
                headers: { 'Content-Type': 'application/json' },
                body: JSON.stringify(body),
            });
            const data = await response.json();
            if (!response.ok) {
                throw new Error(data.detail || 'Authentication failed');
            }
            return data;
        }

        function renderRoster(users) {
            const roster = $('roster');
            roster.innerHTML = '';
            if (!users.length) {
                roster.innerHTML = '<li class=\"text-xs text-slate-500\">Nobody else is online.</li>';
                return;
            }
            users.forEach((user) => {
                const item = document.createElement('li');
                item.className = 'flex items-center justify-between';
                const label = document.createElement('span');
                label.textContent = user.name;
                const button = document.createElement('button');
                button.className = 'rounded-full border border-emerald-400/60 px-3 py-1 text-xs text-emerald-300';
                button.textContent = 'Call';
                button.addEventListener('click', () => startCall(user));
                item.appendChild(label);
                item.appendChild(button);
                roster.appendChild(item);
            });
        }

        async function ensureMedia() {
            if (!localStream) {
                localStream = await navigator.mediaDevices.getUserMedia({ audio: true, video: true });
                $('localVideo').srcObject = localStream;
            }
            return localStream;
        }

        function createPeer() {
            const pc = new RTCPeerConnection({ iceServers });
            localStream.getTracks().forEach((track) => pc.addTrack(track, localStream));
            pc.onicecandidate = (event) => {
                if (event.candidate) {
                    send('ice-candidate', { to: peerId, candidate: event.candidate });
                }
            };
            pc.ontrack = (event) => {
                $('remoteVideo').srcObject = event.streams[0];
            };
            return pc;
        }

        function resetCall(message) {
            if (peer) {
                peer.close();
                peer = null;
            }
            peerId = null;
            pendingOffer = null;
            $('remoteVideo').srcObject = null;
            $('incoming').classList.add('hidden');
            $('incoming').classList.remove('flex');
            $('hangupButton').classList.add('hidden');
            setStatus(message);
        }

        async function startCall(user) {
            if (peer) {
                return;
            }
            await ensureMedia();
            peerId = user.id;
            peer = createPeer();
            const offer = await peer.createOffer();
            await peer.setLocalDescription(offer);
            send('call-user', { to: user.id, offer });
            $('hangupButton').classList.remove('hidden');
            setStatus(`Calling ${user.name}...`);
        }

        async function acceptCall() {
            if (!pendingOffer) {
                return;
            }
            await ensureMedia();
            peer = createPeer();
            await peer.setRemoteDescription(new RTCSessionDescription(pendingOffer));
            const answer = await peer.createAnswer();
            await peer.setLocalDescription(answer);
            send('call-accepted', { to: peerId, answer });
            pendingOffer = null;
            $('incoming').classList.add('hidden');
            $('incoming').classList.remove('flex');
            $('hangupButton').classList.remove('hidden');
            setStatus('In call.');
        }

        const handlers = {
            'users-updated': (users) => renderRoster(users),
            'incoming-call': ({ from, offer }) => {
                peerId = from.id;
                pendingOffer = offer;
                $('incomingText').textContent = `${from.name} is calling`;
                $('incoming').classList.remove('hidden');
                $('incoming').classList.add('flex');
            },
            'call-accepted': async ({ answer }) => {
                if (peer) {
                    await peer.setRemoteDescription(new RTCSessionDescription(answer));
                    setStatus('In call.');
                }
            },
            'ice-candidate': async ({ candidate }) => {
                if (peer) {
                    try {
                        await peer.addIceCandidate(new RTCIceCandidate(candidate));
                    } catch (error) {
                        console.warn('Failed to add candidate:', error);
                    }
                }
            },
            'call-rejected': () => resetCall('Call was rejected.'),
            'call-ended': () => resetCall('Call ended.'),
            'call-error': ({ code, reason }) => {
                resetCall(code === 'unavailable' ? `User unavailable (${reason}).` : 'That call is no longer active.');
            },
        };

        async function connect() {
            const path = await loadInfo();
            const scheme = window.location.protocol === 'https:' ? 'wss' : 'ws';
            socket = new WebSocket(`${scheme}://${window.location.host}${path}?token=${encodeURIComponent(token)}`);
            socket.addEventListener('open', () => {
                $('connection').textContent = 'connected';
                send('user-online', me);
            });
            socket.addEventListener('close', () => {
                $('connection').textContent = 'offline';
                resetCall('Disconnected from server.');
            });
            socket.addEventListener('message', (event) => {
                const message = JSON.parse(event.data);
                const handler = handlers[message.type];
                if (handler) {
                    handler(message.payload);
                }
            });
        }

        $('authForm').addEventListener('submit', (event) => event.preventDefault());
        document.querySelectorAll('#authForm button').forEach((button) => {
            button.addEventListener('click', async (event) => {
                event.preventDefault();
                try {
                    const data = await authenticate(button.dataset.mode);
                    token = data.token;
                    me = data.user;
                    $('whoami').textContent = me.name;
                    $('authPanel').classList.add('hidden');
                    $('callPanel').classList.remove('hidden');
                    $('logoutButton').classList.remove('hidden');
                    await connect();
                } catch (error) {
                    $('authStatus').textContent = error.message;
                }
            });
        });

        $('acceptButton').addEventListener('click', () => void acceptCall());
        $('rejectButton').addEventListener('click', () => {
            send('call-rejected', { to: peerId });
            resetCall('Call rejected.');
        });
        $('hangupButton').addEventListener('click', () => {
            send('end-call', { to: peerId });
            resetCall('Call ended.');
        });
        $('logoutButton').addEventListener('click', () => window.location.reload());
    </script>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse, tags=["meta"])
async def index() -> HTMLResponse:
    """Serve the single-page calling client."""

    return HTMLResponse(content=HTML_PAGE)


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)

"""
Browser provisioning for meeting sessions.

Launches Chromium via Playwright with media flags that let the bot:
- auto-accept microphone/camera permission prompts
- capture its own tab (getDisplayMedia with preferCurrentTab)
- play synthesized audio without a user gesture

Every page gets INIT_SCRIPT before any site script runs. It installs
``window.__meetbot``: a registry of RTCPeerConnections (so audio can be
swapped into, or read from, the live call) and a getUserMedia override
that hands out the synthesized speech stream when one is registered.
"""

import logging
from typing import Optional

from meetbot.config import BrowserConfig, get_config
from meetbot.page import PlaywrightPage

logger = logging.getLogger(__name__)

CHROME_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-dev-shm-usage",
    "--disable-sync",
    "--password-store=basic",
    # Auto-approve mic/camera permission prompts with fake devices
    "--use-fake-ui-for-media-stream",
    "--use-fake-device-for-media-stream",
    # Tab capture for the recording pipeline
    "--auto-accept-this-tab-capture",
    "--auto-select-desktop-capture-source=Meet",
    "--enable-usermedia-screen-capturing",
    "--autoplay-policy=no-user-gesture-required",
]

INIT_SCRIPT = """
(() => {
    if (window.__meetbot) {
        return;
    }

    const registry = {
        connections: [],
        ttsStream: null,

        describeTransports() {
            const live = this.connections.filter((pc) => pc.connectionState !== 'closed');
            let outbound = 0;
            const inbound = [];
            live.forEach((pc, pcIndex) => {
                pc.getSenders().forEach((sender) => {
                    if (sender.track && sender.track.kind === 'audio') {
                        outbound++;
                    }
                });
                pc.getReceivers().forEach((receiver) => {
                    const track = receiver.track;
                    if (track && track.kind === 'audio' && track.readyState === 'live') {
                        inbound.push({ id: track.id, muted: track.muted, connection: pcIndex });
                    }
                });
            });
            return { connections: live.length, outbound_audio: outbound, inbound_audio: inbound };
        },

        inboundAudioTracks() {
            const tracks = [];
            this.connections.forEach((pc) => {
                if (pc.connectionState === 'closed') {
                    return;
                }
                pc.getReceivers().forEach((receiver) => {
                    const track = receiver.track;
                    if (track && track.kind === 'audio' && track.readyState === 'live') {
                        tracks.push(track);
                    }
                });
            });
            const unmuted = tracks.filter((t) => !t.muted);
            return unmuted.length > 0 ? unmuted : tracks;
        },

        async replaceOutboundAudio(track) {
            let swapped = 0;
            for (const pc of this.connections) {
                if (pc.connectionState === 'closed') {
                    continue;
                }
                for (const transceiver of pc.getTransceivers()) {
                    const sender = transceiver.sender;
                    const kind = (sender.track && sender.track.kind) ||
                        (transceiver.receiver && transceiver.receiver.track && transceiver.receiver.track.kind);
                    if (kind !== 'audio') {
                        continue;
                    }
                    try {
                        await sender.replaceTrack(track);
                        swapped++;
                    } catch (e) {
                        console.warn('[meetbot] replaceTrack failed: ' + e);
                    }
                }
            }
            return swapped;
        },
    };
    window.__meetbot = registry;

    const NativePeerConnection = window.RTCPeerConnection;
    if (NativePeerConnection) {
        const HookedPeerConnection = function (...args) {
            const pc = new NativePeerConnection(...args);
            registry.connections.push(pc);
            console.debug('[meetbot] RTCPeerConnection registered (' + registry.connections.length + ')');
            return pc;
        };
        HookedPeerConnection.prototype = NativePeerConnection.prototype;
        Object.setPrototypeOf(HookedPeerConnection, NativePeerConnection);
        window.RTCPeerConnection = HookedPeerConnection;
    }

    const mediaDevices = navigator.mediaDevices;
    if (mediaDevices && mediaDevices.getUserMedia) {
        const nativeGetUserMedia = mediaDevices.getUserMedia.bind(mediaDevices);
        mediaDevices.getUserMedia = async (constraints) => {
            if (constraints && constraints.audio && registry.ttsStream) {
                console.debug('[meetbot] getUserMedia served synthesized audio stream');
                return registry.ttsStream;
            }
            return nativeGetUserMedia(constraints);
        };
    }
})();
"""


async def launch_page(url: str, correlation_id: str, app_tag: str, config: Optional[BrowserConfig] = None):
    """
    Launch Chromium and open a fresh page for a session.

    Args:
        url: Meeting URL (navigation happens later, in the session controller)
        correlation_id: Session id used in log lines
        app_tag: Meeting provider tag, e.g. "google"
        config: Browser settings (defaults to the global config)

    Returns:
        PlaywrightPage (the session installs INIT_SCRIPT before navigating)
    """
    from playwright.async_api import async_playwright

    config = config or get_config().browser
    logger.info(f"[{correlation_id}] Launching Chromium for {app_tag} meeting (headless={config.headless})")

    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(
            headless=config.headless,
            args=CHROME_ARGS + list(config.extra_args),
            ignore_default_args=["--enable-automation", "--mute-audio"],
        )
        context_kwargs = {
            "permissions": ["camera", "microphone"],
            "viewport": {"width": config.viewport_width, "height": config.viewport_height},
        }
        if config.user_agent:
            context_kwargs["user_agent"] = config.user_agent
        context = await browser.new_context(**context_kwargs)
        page = await context.new_page()
    except Exception:
        await playwright.stop()
        raise

    logger.info(f"[{correlation_id}] Browser ready for {url}")
    return PlaywrightPage(page, owner=browser, playwright=playwright)

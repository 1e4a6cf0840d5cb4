"""
Drainage Console
Operator view of a CAPD drainage session: timer, bag weight, alerts and controls

Run with:  streamlit run drain_console.py
Set DRAINWATCH_MODE=live to use the HTTP device service instead of the simulated scale.
"""

import json
import logging
import os
import time
from typing import Iterable, Optional, Tuple

import plotly.graph_objects as go
import streamlit as st
import streamlit.components.v1 as components

from alert_control import AlertCue, Severity, ToneStep
from drainwatch import config
from drainwatch.errors import ValidationError
from drainwatch.monitor import DrainageMonitor, create_live_monitor, create_mock_monitor
from event_logger import EventType
from state_machines import DrainagePhase, SessionState

CONSOLE_CSS = """
<style>
    .big-timer {
        font-size: 3.5rem !important;
        font-weight: 700;
        text-align: center;
        padding: 1.5rem;
        border-radius: 0.75rem;
        background: linear-gradient(135deg, #2d7a8f 0%, #4a9d6f 100%);
        color: white;
        margin: 1rem 0;
        font-variant-numeric: tabular-nums;
    }

    .phase-label {
        font-size: 0.9rem;
        text-transform: uppercase;
        letter-spacing: 0.05em;
        opacity: 0.9;
    }

    .stDeployButton {display: none;}
    footer {visibility: hidden;}
</style>
"""

PHASE_LABELS = {
    DrainagePhase.IDLE: "Waiting for bag",
    DrainagePhase.AWAITING_INITIAL_WEIGHT: "Ready - open the drain line",
    DrainagePhase.DRAINING: "Draining",
    DrainagePhase.REMINDER_ISSUED: "Almost done - prepare to clamp",
    DrainagePhase.COMPLETED: "Drainage complete",
    DrainagePhase.CANCELLED: "Stopped",
}

BANNERS = {
    Severity.INFO: st.info,
    Severity.SUCCESS: st.success,
    Severity.WARNING: st.warning,
    Severity.ERROR: st.error,
}


def format_elapsed(seconds: float) -> str:
    """HH:MM:SS for the treatment timer"""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def build_mass_figure(history: Iterable[Tuple[int, float]], session: Optional[SessionState] = None) -> go.Figure:
    """
    Bag weight over the session, with reminder/completion levels marked
    once the initial weight is known.
    """
    points = list(history)
    t0 = points[0][0] if points else 0
    x = [(ts - t0) / 1000.0 for ts, _ in points]
    y = [mass for _, mass in points]

    fig = go.Figure(data=[
        go.Scatter(
            x=x,
            y=y,
            mode='lines+markers',
            line=dict(color='#2d7a8f', width=2),
            marker=dict(size=4),
            hovertemplate='<b>%{x:.0f}s</b><br>%{y:.3f} kg<extra></extra>'
        )
    ])

    if session is not None and session.initial_mass_kg is not None:
        levels = [
            (session.initial_mass_kg, 'Initial', '#5a7c71'),
            (session.initial_mass_kg - session.reminder_threshold_grams / 1000.0, 'Reminder', '#ffc107'),
            (session.initial_mass_kg - session.completion_threshold_grams / 1000.0, 'Complete', '#4a9d6f'),
        ]
        for level, label, color in levels:
            fig.add_hline(y=level, line_dash='dash', line_color=color,
                          annotation_text=label, annotation_position='top left')

    fig.update_layout(
        title=None,
        height=320,
        margin=dict(l=60, r=20, t=20, b=50),
        plot_bgcolor='white',
        xaxis_title='Seconds',
        yaxis_title='Weight (kg)',
        showlegend=False
    )
    return fig


def build_tone_script(pattern: Iterable[ToneStep]) -> str:
    """Web Audio snippet that plays an alert pattern in the browser"""
    steps = [
        {'f': step.frequency_hz, 'd': step.duration_ms / 1000.0,
         'o': step.offset_ms / 1000.0, 'w': step.waveform}
        for step in pattern
    ]
    return f"""
    <script>
    (function() {{
        const ctx = new (window.AudioContext || window.webkitAudioContext)();
        for (const s of {json.dumps(steps)}) {{
            const osc = ctx.createOscillator();
            const gain = ctx.createGain();
            osc.type = s.w;
            osc.frequency.value = s.f;
            gain.gain.setValueAtTime(0.3, ctx.currentTime + s.o);
            gain.gain.exponentialRampToValueAtTime(0.01, ctx.currentTime + s.o + s.d);
            osc.connect(gain);
            gain.connect(ctx.destination);
            osc.start(ctx.currentTime + s.o);
            osc.stop(ctx.currentTime + s.o + s.d);
        }}
    }})();
    </script>
    """


def _monitor() -> DrainageMonitor:
    return st.session_state.monitor


def render_header():
    st.markdown(CONSOLE_CSS, unsafe_allow_html=True)

    col1, col2 = st.columns([3, 1])

    with col1:
        st.title("Drainage Monitor")
        st.caption(f"Device {_monitor().device_id} · {st.session_state.mode} mode")

    with col2:
        reconnection = _monitor().reconnection
        if reconnection.connected:
            st.success("Scale connected")
        else:
            st.error(reconnection.last_error or "Scale not connected")
            if st.button("Reconnect"):
                if _monitor().manual_reconnect():
                    st.success("Reconnected!")
                else:
                    st.error(reconnection.last_error or "Failed to connect to scale")


def render_timer():
    session = _monitor().session
    if session is None:
        elapsed, label = 0, "No treatment in progress"
    else:
        elapsed, label = session.elapsed_seconds, PHASE_LABELS[session.phase]

    st.markdown(f"""
    <div class="big-timer">
        <div>{format_elapsed(elapsed)}</div>
        <div class="phase-label">{label}</div>
    </div>
    """, unsafe_allow_html=True)


def render_metrics():
    session = _monitor().session
    col1, col2, col3 = st.columns(3)

    with col1:
        if session is not None and session.initial_mass_kg is not None:
            st.metric("Initial weight", f"{session.initial_mass_kg:.3f} kg")
        else:
            st.metric("Initial weight", "-")
    with col2:
        current = session.current_mass_kg if session is not None else 0.0
        st.metric("Current weight", f"{current:.3f} kg")
    with col3:
        drained = session.drained_grams if session is not None and session.initial_mass_kg is not None else 0.0
        st.metric("Drained", f"{drained:.0f} g")

    if session is not None:
        st.caption(session.status_message)


def render_alert():
    """Active alert banner, with its sound played once per cue"""
    monitor = _monitor()
    cue: Optional[AlertCue] = monitor.alerts.active

    if monitor.sync_warning and (cue is None or cue.kind.value != "warning"):
        st.warning(monitor.sync_warning)

    if cue is None:
        return

    BANNERS[cue.severity](cue.event.message)
    if st.session_state.get('last_played_cue') != cue.cue_id:
        st.session_state.last_played_cue = cue.cue_id
        components.html(build_tone_script(cue.pattern), height=0)


def render_chart():
    monitor = _monitor()
    # redrawn every loop iteration, so each render needs its own key
    st.session_state.chart_renders = st.session_state.get('chart_renders', 0) + 1
    st.plotly_chart(build_mass_figure(monitor.mass_history, monitor.session),
                    use_container_width=True, key=f"mass_chart_{st.session_state.chart_renders}")


def render_recent_events():
    logger = st.session_state.event_logger
    if logger is None:
        return

    events = [e for e in logger.get_recent_events(n=20) if e['event_type'] != EventType.SYSTEM_ALERT.value]
    if not events:
        st.caption("No events recorded yet")
        return
    for event in reversed(events[-6:]):
        reason = event['data'].get('reason') or event['data'].get('message') or ''
        st.markdown(f"**{event['datetime'][11:19]}** · {event['event_type'].replace('_', ' ')} {reason}")


def render_controls():
    monitor = _monitor()
    session = monitor.session
    col1, col2, col3, col4 = st.columns(4)

    try:
        with col1:
            if st.button("Start", use_container_width=True,
                         disabled=session is not None and not session.is_terminal):
                monitor.start_session()
                st.rerun()

        with col2:
            weight = st.number_input("Initial weight (kg)", min_value=0.0,
                                     max_value=config.MAX_PLAUSIBLE_MASS_KG, step=0.1,
                                     label_visibility="collapsed")
            if st.button("Set weight", use_container_width=True,
                         disabled=session is None or session.phase not in (
                             DrainagePhase.IDLE, DrainagePhase.AWAITING_INITIAL_WEIGHT)):
                monitor.manual_set_initial_weight(weight)

        with col3:
            if st.button("Stop", use_container_width=True,
                         disabled=session is None or session.is_terminal):
                monitor.manual_stop()
            if st.button("Dismiss alert", use_container_width=True,
                         disabled=monitor.alerts.active is None):
                monitor.dismiss_alert()

        with col4:
            if st.button("Submit", use_container_width=True,
                         disabled=session is None or not session.is_terminal):
                summary = monitor.finish_session()
                st.session_state.last_summary = summary
                st.rerun()
    except ValidationError as e:
        st.error(str(e))

    if st.session_state.get('last_summary'):
        with st.expander("Last treatment record"):
            st.json(st.session_state.last_summary)


class DrainConsole:
    """Operator console main class"""

    def __init__(self, update_interval_ms=500):
        self.update_interval = update_interval_ms / 1000.0
        if 'console_initialized' not in st.session_state:
            self._initialize()

    def _initialize(self):
        """Initialize components"""
        st.session_state.console_initialized = True
        st.session_state.mode = os.environ.get("DRAINWATCH_MODE", "mock")

        if st.session_state.mode == "live":
            monitor = create_live_monitor()
        else:
            monitor = create_mock_monitor(log_dir=config.EVENT_LOG_DIR)

        monitor.start()
        st.session_state.monitor = monitor
        st.session_state.event_logger = monitor.event_logger
        st.session_state.last_played_cue = None
        st.session_state.last_summary = None

        if monitor.event_logger is not None:
            monitor.event_logger.load_events_from_disk(max_events=config.EVENT_BUFFER_SIZE)

    def run(self):
        """Main app"""
        st.set_page_config(
            page_title="Drainage Monitor",
            page_icon="",
            layout="wide",
            initial_sidebar_state="collapsed"
        )

        render_header()
        render_controls()

        st.divider()

        timer_placeholder = st.empty()
        alert_placeholder = st.empty()
        metrics_placeholder = st.empty()
        chart_placeholder = st.empty()

        st.divider()
        st.markdown("### Recent Events")
        events_placeholder = st.empty()

        # Main loop
        while True:
            _monitor().scheduler.run_pending()

            with timer_placeholder.container():
                render_timer()
            with alert_placeholder.container():
                render_alert()
            with metrics_placeholder.container():
                render_metrics()
            with chart_placeholder.container():
                render_chart()
            with events_placeholder.container():
                render_recent_events()

            time.sleep(self.update_interval)


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    console = DrainConsole(update_interval_ms=500)
    console.run()

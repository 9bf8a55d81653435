"""
Kidney Strip Analyzer - Streamlit Demo
==================================================
Photograph or upload a urine test strip and get an on-device kidney risk
screening result.

License: MIT
"""

import streamlit as st
import logging
from typing import Dict, List

import plotly.graph_objects as go
import plotly.express as px

from model import (
    AnalysisResult,
    ModelConfig,
    ModelLoader,
    Severity,
    StripColor,
    analyze_image_sync,
)
from database import AnalysisHistoryDB, HistoryConfig

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SEVERITY_STYLE: Dict[Severity, Dict[str, str]] = {
    Severity.NORMAL: {"label": "Normal", "css": "low-risk", "color": "#2ed573"},
    Severity.HIGH_RISK: {"label": "High Risk", "css": "high-risk", "color": "#ff8c00"},
    Severity.DANGER: {"label": "Danger", "css": "critical-risk", "color": "#ff4757"},
}

STRIP_SWATCH: Dict[StripColor, str] = {
    StripColor.YELLOW: "#facc15",
    StripColor.ORANGE: "#fb923c",
    StripColor.GREEN: "#4ade80",
}

# ============================================================================
# STREAMLIT CONFIGURATION
# ============================================================================

def init_page_config():
    """Initialize Streamlit page configuration."""
    st.set_page_config(
        page_title="Kidney Strip Analyzer",
        layout="wide",
        initial_sidebar_state="expanded",
    )

def load_custom_css():
    """Load custom CSS styling."""
    st.markdown("""
    <style>
        .main-header {
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            padding: 2rem;
            border-radius: 15px;
            text-align: center;
            color: white;
            margin-bottom: 2rem;
        }

        .main-header h1 { margin: 0; font-size: 2.5rem; font-weight: 700; }
        .main-header p { margin: 0.5rem 0 0 0; font-size: 1.1rem; opacity: 0.9; }

        .result-card {
            background: #ffffff;
            border-radius: 12px;
            padding: 1.5rem;
            margin: 1rem 0;
            box-shadow: 0 2px 8px rgba(0, 0, 0, 0.1);
            border-left: 5px solid #3498db;
        }

        .critical-risk { border-left-color: #ff4757; background-color: #fff8f8; }
        .high-risk { border-left-color: #ff8c00; background-color: #fffaf3; }
        .low-risk { border-left-color: #2ed573; background-color: #f5fff8; }

        .risk-badge {
            display: inline-block;
            padding: 0.25rem 0.75rem;
            border-radius: 12px;
            font-weight: 600;
            font-size: 0.85rem;
            color: white;
        }

        .swatch {
            display: inline-block;
            width: 1rem;
            height: 1rem;
            border-radius: 50%;
            vertical-align: middle;
            margin-right: 0.4rem;
        }

        #MainMenu {visibility: hidden;}
        footer {visibility: hidden;}
    </style>
    """, unsafe_allow_html=True)

# ============================================================================
# SHARED RESOURCES
# ============================================================================

@st.cache_resource
def get_loader() -> ModelLoader:
    """Process-wide model loader; the model itself loads on first scan."""
    return ModelLoader(ModelConfig())

@st.cache_resource
def get_history_db() -> AnalysisHistoryDB:
    return AnalysisHistoryDB(HistoryConfig())

# ============================================================================
# VISUALIZATION COMPONENTS
# ============================================================================

def create_confidence_gauge(result: AnalysisResult) -> go.Figure:
    """
    Create confidence gauge chart.

    Args:
        result: Analysis result to display

    Returns:
        Plotly figure object
    """
    color = SEVERITY_STYLE[result.severity]["color"]

    fig = go.Figure(go.Indicator(
        mode="gauge+number",
        value=round(result.confidence * 100, 1),
        number={'suffix': '%'},
        title={'text': "Model Confidence", 'font': {'size': 20}},
        gauge={
            'axis': {'range': [0, 100], 'tickwidth': 1},
            'bar': {'color': color},
            'bgcolor': "white",
            'borderwidth': 2,
            'bordercolor': "gray",
            'steps': [
                {'range': [0, 40], 'color': '#f8d7da'},
                {'range': [40, 70], 'color': '#fff3cd'},
                {'range': [70, 100], 'color': '#d4edda'}
            ],
        }
    ))

    fig.update_layout(
        height=300,
        margin=dict(l=20, r=20, t=50, b=20),
        paper_bgcolor='rgba(0,0,0,0)',
        font={'size': 14}
    )

    return fig

def create_severity_chart(stats: Dict) -> go.Figure:
    """Pie chart of stored results per severity."""
    counts = stats['by_severity']
    severities = [s for s in Severity if counts.get(s.value)]
    fig = px.pie(
        values=[counts[s.value] for s in severities],
        names=[SEVERITY_STYLE[s]["label"] for s in severities],
        title="Results by Severity",
        color_discrete_sequence=[SEVERITY_STYLE[s]["color"] for s in severities]
    )
    fig.update_traces(textposition='inside', textinfo='percent+label')
    return fig

def display_result_card(result: AnalysisResult, title: str = "Analysis Result") -> None:
    """
    Display formatted result card.

    Args:
        result: Analysis result to display
        title: Card heading
    """
    style = SEVERITY_STYLE[result.severity]
    swatch = STRIP_SWATCH[result.color_detected]
    recommendations = "".join(f"<li>{item}</li>" for item in result.recommendations)

    html = f"""
    <div class="result-card {style['css']}">
        <h3 style="margin: 0 0 0.5rem 0; color: #2c3e50;">{title}</h3>
        <div style="display: flex; justify-content: space-between; margin: 0.5rem 0;">
            <span><span class="swatch" style="background-color: {swatch};"></span>
                <strong>Color Detected:</strong> {result.color_detected.value.title()}</span>
            <span class="risk-badge" style="background-color: {style['color']};">{style['label']}</span>
        </div>
        <p style="margin: 0.5rem 0;"><strong>Albumin-Creatinine Ratio:</strong> {result.albumin_creatinine_ratio}</p>
        <p style="margin: 0.5rem 0;"><strong>Confidence:</strong> {result.confidence * 100:.1f}%</p>
        <p style="margin: 0.5rem 0; color: #7f8c8d;"><em>{result.diagnosis}</em></p>
        <div style="background-color: rgba(0,0,0,0.05); padding: 0.75rem; border-radius: 5px; margin-top: 0.5rem;">
            <strong>Recommendations:</strong>
            <ul style="margin: 0.25rem 0 0 0;">{recommendations}</ul>
        </div>
    </div>
    """

    st.markdown(html, unsafe_allow_html=True)

# ============================================================================
# MAIN APPLICATION
# ============================================================================

def render_header():
    """Render application header."""
    st.markdown("""
    <div class="main-header">
        <h1>Kidney Health Test</h1>
        <p>Albumin-creatinine screening from a urine test strip photo</p>
    </div>
    """, unsafe_allow_html=True)

def render_sidebar(history_db: AnalysisHistoryDB):
    """Render sidebar with information and controls."""
    st.sidebar.title("Information")

    st.sidebar.markdown("""
    ### How it works
    1. Dip the test strip and wait for the color to develop
    2. Upload a photo or capture one with your camera
    3. Press **Start Scan**

    The photo is analysed on this device by a 3-class model:
    **yellow** (normal), **orange** (elevated), **green** (critical).
    """)

    st.sidebar.markdown("---")

    st.sidebar.markdown("""
    ### Medical Disclaimer

    This screening tool does not replace laboratory testing or
    professional medical advice. **Always consult a qualified
    healthcare provider** about your kidney health.
    """)

    st.sidebar.markdown("---")

    if st.sidebar.button("Clear history", use_container_width=True):
        history_db.clear()
        st.session_state.pop('result', None)
        st.sidebar.success("History cleared")

def render_test_tab(history_db: AnalysisHistoryDB):
    """Upload or capture a strip photo and run the analysis."""
    col1, col2 = st.columns([1, 1], gap="large")

    with col1:
        st.header("Strip Photo")

        source = st.radio("Image source", ["Upload", "Camera"], horizontal=True)
        if source == "Upload":
            image_file = st.file_uploader(
                "Choose a test strip photo",
                type=['png', 'jpg', 'jpeg'],
                help="Upload a clear, well-lit photo of the test strip"
            )
        else:
            image_file = st.camera_input("Capture the test strip")

        if image_file is not None:
            st.image(image_file, caption="Image ready for analysis", use_container_width=True)

    with col2:
        st.header("Analysis Results")

        if image_file is None:
            st.info("Upload or capture an image to begin analysis")
            return

        if st.button("Start Scan", type="primary", use_container_width=True):
            with st.spinner("Analyzing image..."):
                result = analyze_image_sync(image_file.getvalue(), get_loader())

            st.session_state.result = result
            if result.is_fallback:
                st.error("Scan failed. Please try again.")
            else:
                history_db.record(result)
                st.success("Scan complete. Analysis results are ready.")

        result = st.session_state.get('result')
        if result is None:
            return

        if result.is_fallback:
            st.warning("The model could not analyze this image. Please retry.")
        display_result_card(result)

        if not result.is_fallback:
            st.plotly_chart(create_confidence_gauge(result), use_container_width=True)

def render_history_tab(history_db: AnalysisHistoryDB):
    """Stored results, newest first."""
    st.header("Test History")

    history: List[AnalysisResult] = history_db.list()
    if not history:
        st.info("No tests yet. Take your first kidney test to see results here.")
        return

    stats = history_db.get_statistics()
    col_a, col_b, col_c = st.columns(3)
    with col_a:
        st.metric("Total Tests", stats['total_analyses'])
    with col_b:
        avg = stats['avg_confidence']
        st.metric("Average Confidence", f"{avg * 100:.1f}%" if avg is not None else "N/A")
    with col_c:
        st.metric("Latest Severity", SEVERITY_STYLE[history[0].severity]["label"])

    st.plotly_chart(create_severity_chart(stats), use_container_width=True)

    for index, result in enumerate(history):
        display_result_card(result, title=f"Test #{len(history) - index} ({result.timestamp})")

    with st.expander("View as table"):
        df = history_db.to_dataframe()
        st.dataframe(df, use_container_width=True, hide_index=True)
        st.download_button(
            "Download CSV",
            data=df.to_csv(index=False),
            file_name="kidney_test_history.csv",
            mime="text/csv"
        )

def main():
    """Main application entry point."""
    init_page_config()
    load_custom_css()

    history_db = get_history_db()

    render_header()
    render_sidebar(history_db)

    tab1, tab2 = st.tabs(["Kidney Test", "Test History"])

    with tab1:
        render_test_tab(history_db)

    with tab2:
        render_history_tab(history_db)

if __name__ == "__main__":
    main()

"""
Tests for the Streamlit page helpers.
"""

from unittest.mock import MagicMock, patch

import plotly.graph_objects as go

import app
from app import (
    SEVERITY_STYLE,
    STRIP_SWATCH,
    create_confidence_gauge,
    create_severity_chart,
)
from model import Severity, StripColor, interpret_prediction


def test_every_severity_has_style():
    assert set(SEVERITY_STYLE) == set(Severity)
    for style in SEVERITY_STYLE.values():
        assert {'label', 'css', 'color'} <= style.keys()


def test_every_color_has_swatch():
    assert set(STRIP_SWATCH) == set(StripColor)


def test_confidence_gauge_value():
    result = interpret_prediction([0.1, 0.25, 0.65])
    fig = create_confidence_gauge(result)

    assert isinstance(fig, go.Figure)
    assert fig.data[0].value == 65.0


def test_severity_chart_skips_empty_classes():
    stats = {'by_severity': {'normal': 3, 'high-risk': 0, 'danger': 1}}
    fig = create_severity_chart(stats)

    assert list(fig.data[0].labels) == ['Normal', 'Danger']


def test_uploaded_preview_fills_column():
    """The preview uses the container width, not the removed column flag."""
    with patch.object(app, 'st') as st_mock:
        st_mock.columns.return_value = (MagicMock(), MagicMock())
        st_mock.radio.return_value = "Upload"
        st_mock.button.return_value = False
        st_mock.session_state = {}

        app.render_test_tab(MagicMock())

    _, kwargs = st_mock.image.call_args
    assert kwargs.get('use_container_width') is True
    assert 'use_column_width' not in kwargs

"""Utility tests for WizDoc."""

from wizdoc.cli.utils import TEACHING_TIPS, console, format_duration, message_for_stage, random_tip
from wizdoc.core.models import PipelineState


def test_console_available():
    """Test that console is available."""
    assert console is not None
    assert hasattr(console, 'print')


def test_format_duration():
    assert format_duration(0) == "00:00"
    assert format_duration(75.9) == "01:15"
    assert format_duration(3600) == "60:00"


def test_stage_messages():
    assert message_for_stage(PipelineState.ANALYZING) == "Analyzing medical content..."
    assert message_for_stage(PipelineState.IDLE) == "Processing..."
    assert random_tip() in TEACHING_TIPS

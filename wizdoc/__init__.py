"""WizDoc - capture spoken teaching moments and turn them into cards.

This package records a short teaching moment, sends it through remote
transcription and AI structuring stages, and publishes the result as a Card
into observable application state.
"""

from .cli.commands import app

__version__ = "1.0.0"
__author__ = "WizDoc Team"

__all__ = ["app", "__version__"]

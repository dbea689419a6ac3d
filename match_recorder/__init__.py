"""Match stream recorder: scheduled and on-demand live stream capture."""

__version__ = "1.0.0"

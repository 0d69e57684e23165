"""LabelFlow: order to printed shipping label."""
__version__ = "1.0.0"

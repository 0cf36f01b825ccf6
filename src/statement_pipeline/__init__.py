"""
Statement pipeline.

Asynchronous, stage-based processing of uploaded bank statements:
jobs flow through durable work streams (statement processing,
transaction categorization, risk analysis) and are consumed by pools of
stage workers supervised by a worker manager.
"""

__version__ = "0.1.0"

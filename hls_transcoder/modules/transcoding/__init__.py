"""HLS transcoding module.

Encoder adapter, staging areas, artifact upload, the pipeline orchestrator
and the intake endpoint that starts it.
"""

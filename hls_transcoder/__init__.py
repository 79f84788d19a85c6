"""HLS Transcoder service.

Accepts transcode requests for uploaded videos and publishes adaptive-bitrate
HLS renditions plus a thumbnail to object storage.

Modules:
    - core: Configuration, database, storage, logging, metrics, tracing, Celery setup
    - modules.video: Video records and status transitions
    - modules.transcoding: Encoder adapter, staging, artifact upload, pipeline, intake API
"""

__version__ = "0.1.0"

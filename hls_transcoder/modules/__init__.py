"""Application modules.

- video: Video records in the videos table
- transcoding: HLS transcoding pipeline and intake endpoint
"""

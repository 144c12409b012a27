from pydantic import BaseModel, Field


class ResolveRequest(BaseModel):
    """Request model for resolving a media link."""

    url: str = Field(
        ...,
        min_length=1,
        description="YouTube, Spotify track or TikTok link (or a bare YouTube id)",
        examples=["https://www.youtube.com/watch?v=dQw4w9WgXcQ"],
    )
    kind: str = Field("audio", description="audio or video (mp3/m4a/opus/mp4 accepted)")
    quality: str = Field("128", description="Bitrate for audio (e.g. 128) or resolution for video (e.g. 720p)")


class ResolveResponse(BaseModel):
    """Response model for a resolved request."""

    title: str
    cache_key: str
    source_kind: str
    source_id: str


class DeliverRequest(BaseModel):
    """Request model for delivery and failure reports."""

    cache_key: str = Field(..., min_length=1, examples=["yt:dQw4w9WgXcQ:audio:128"])


class DeliverResponse(BaseModel):
    """Response model for a delivered media asset."""

    status: str = "success"
    cache_key: str
    handle: str
    url: str


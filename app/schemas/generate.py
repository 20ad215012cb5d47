"""
Generate Schemas
Pydantic models for music generation requests and responses.
"""

from typing import Optional
from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    """Schema for a music generation request."""
    tags: str = Field(..., min_length=1, description="Style tags, e.g. 'lofi, chill'")
    lyrics: str = Field("", description="Lyrics; empty means the provider writes its own")
    title: Optional[str] = Field(None, description="Optional track title")
    instrumental: bool = False
    vocal_gender: Optional[str] = Field(None, description="'m' or 'f'")
    negative_tags: str = ""
    input_audio_url: Optional[str] = Field(None, description="Source audio for audio-to-music")


class GenerateResponse(BaseModel):
    """Schema for generation response."""
    job_id: str
    state: str
    remote_task_id: Optional[str] = None
    message: str

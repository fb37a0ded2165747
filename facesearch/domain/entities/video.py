"""Video discovery domain entities."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from facesearch.domain.entities.face import FaceDetection


class VideoCandidate(BaseModel):
    """A video found on a listing page. Identity is ``(source_site, id)``."""
    id: str = Field(..., description="Stable id derived from the site and page URL")
    title: str
    page_url: str
    thumbnail_url: str
    source_site: str

    model_config = ConfigDict(frozen=True)


class VideoMatch(BaseModel):
    """A candidate together with the faces found in its thumbnail."""
    candidate: VideoCandidate
    detected_faces: List[FaceDetection] = Field(default_factory=list)
    best_similarity: Optional[float] = Field(
        None, ge=0.0, le=1.0, description="Rounded best similarity against the user face"
    )

    @property
    def key(self):
        return (self.candidate.source_site, self.candidate.id)

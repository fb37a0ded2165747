"""API models for the search endpoints.

Field names are snake_case in Python and camelCase on the wire. None of
these models has a field that can carry an embedding.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from facesearch.core.utils.validation import MAX_THRESHOLD, MIN_THRESHOLD
from facesearch.domain.entities.session import SearchError, SessionStats
from facesearch.domain.entities.video import VideoMatch
from facesearch.services.pipeline import CleanupReport, SearchResults, SessionInfo
from facesearch.services.similarity import MatchStatistics


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BoundingBoxOut(CamelModel):
    """Face box in thumbnail pixels."""
    x: float
    y: float
    width: float
    height: float


class VideoResult(CamelModel):
    """One matching video as returned to callers."""
    id: str = Field(..., description="Stable video identifier")
    title: str
    thumbnail_url: str
    video_url: str
    source_website: str
    similarity_score: float = Field(..., ge=0.0, le=1.0, description="Best score, two decimals")
    face_count: int = Field(..., ge=0)
    bounding_boxes: List[BoundingBoxOut] = Field(default_factory=list)

    @classmethod
    def from_match(cls, match: VideoMatch) -> "VideoResult":
        """Create an API result from a domain match, dropping embeddings."""
        candidate = match.candidate
        return cls(
            id=candidate.id,
            title=candidate.title,
            thumbnail_url=candidate.thumbnail_url,
            video_url=candidate.page_url,
            source_website=candidate.source_site,
            similarity_score=match.best_similarity or 0.0,
            face_count=len(match.detected_faces),
            bounding_boxes=[
                BoundingBoxOut(**face.bounding_box.model_dump()) for face in match.detected_faces
            ],
        )


class SearchErrorOut(CamelModel):
    source: str
    code: str
    message: str
    video_id: Optional[str] = None

    @classmethod
    def from_error(cls, error: SearchError) -> "SearchErrorOut":
        return cls(
            source=error.source,
            code=error.code.value,
            message=error.message,
            video_id=error.candidate_id,
        )


class ScoreDistributionOut(CamelModel):
    excellent: int
    good: int
    fair: int
    poor: int


class StatisticsOut(CamelModel):
    total_matches: int
    average_score: float
    highest_score: float
    lowest_score: float
    distribution: ScoreDistributionOut

    @classmethod
    def from_statistics(cls, stats: MatchStatistics) -> "StatisticsOut":
        return cls(
            total_matches=stats.total_matches,
            average_score=stats.average_score,
            highest_score=stats.highest_score,
            lowest_score=stats.lowest_score,
            distribution=ScoreDistributionOut(**stats.distribution.model_dump()),
        )


class ProcessImageResponse(CamelModel):
    """Response model for the process-image endpoint."""
    success: bool
    search_id: str = Field("", description="Id to poll for results; empty when no face was found")
    face_detected: bool


class GetResultsResponse(CamelModel):
    """Response model for the results endpoint."""
    status: str
    progress: float = Field(..., ge=0, le=100)
    threshold: float
    results: List[VideoResult]
    processed_sites: List[str]
    errors: List[SearchErrorOut]
    statistics: StatisticsOut

    @classmethod
    def from_search_results(cls, results: SearchResults) -> "GetResultsResponse":
        return cls(
            status=results.status.value,
            progress=results.progress,
            threshold=results.threshold,
            results=[VideoResult.from_match(match) for match in results.results],
            processed_sites=results.processed_sites,
            errors=[SearchErrorOut.from_error(error) for error in results.errors],
            statistics=StatisticsOut.from_statistics(results.statistics),
        )


class ConfigureSearchRequest(CamelModel):
    """Request model for the configure endpoint."""
    threshold: float = Field(
        ...,
        ge=MIN_THRESHOLD,
        le=MAX_THRESHOLD,
        allow_inf_nan=False,
        description="Minimum similarity a match must meet",
    )


class ConfigureSearchResponse(CamelModel):
    """Response model for the configure endpoint."""
    success: bool
    updated_results: List[VideoResult]


class DeleteSessionResponse(CamelModel):
    success: bool


class SessionOut(CamelModel):
    """Session metadata; matches are read from the results endpoint."""
    id: str
    status: str
    progress: float
    threshold: float
    created_at: datetime
    expires_at: datetime
    match_count: int
    processed_sites: List[str]

    @classmethod
    def from_info(cls, info: SessionInfo) -> "SessionOut":
        return cls(
            id=info.search_id,
            status=info.status.value,
            progress=info.progress,
            threshold=info.threshold,
            created_at=info.created_at,
            expires_at=info.expires_at,
            match_count=info.match_count,
            processed_sites=info.processed_sites,
        )


class SessionResponse(CamelModel):
    """Response model for the session endpoint."""
    success: bool
    session: SessionOut


class SessionsByStatusOut(CamelModel):
    processing: int
    completed: int
    error: int


class SessionStatsOut(CamelModel):
    total_active_sessions: int
    sessions_by_status: SessionsByStatusOut
    oldest_session: Optional[datetime] = None
    newest_session: Optional[datetime] = None

    @classmethod
    def from_stats(cls, stats: SessionStats) -> "SessionStatsOut":
        return cls(
            total_active_sessions=stats.total_active,
            sessions_by_status=SessionsByStatusOut(
                processing=stats.processing, completed=stats.completed, error=stats.error
            ),
            oldest_session=stats.oldest_created_at,
            newest_session=stats.newest_created_at,
        )


class SessionStatsResponse(CamelModel):
    """Response model for the session statistics endpoint."""
    success: bool
    stats: SessionStatsOut
    timestamp: datetime


class CleanupSessionsResponse(CamelModel):
    """Response model for the manual cleanup endpoint."""
    success: bool
    cleaned: int
    before: int
    after: int
    timestamp: datetime

    @classmethod
    def from_report(cls, report: CleanupReport, timestamp: datetime) -> "CleanupSessionsResponse":
        return cls(
            success=True,
            cleaned=report.cleaned,
            before=report.before,
            after=report.after,
            timestamp=timestamp,
        )


class HealthResponse(CamelModel):
    status: str
    timestamp: datetime


class ErrorDetail(CamelModel):
    code: str
    message: str


class ErrorResponse(CamelModel):
    """Body of every error response."""
    success: bool = False
    error: ErrorDetail

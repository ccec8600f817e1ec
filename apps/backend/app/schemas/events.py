# apps/backend/app/schemas/events.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional, Union

# Wire format is camelCase; python side stays snake_case.
_wire = ConfigDict(populate_by_name=True, extra="ignore")

Timestamp = Union[int, float, str]

EVENT_TYPES = ("pageview", "click", "hover", "scroll", "mousemove", "input", "submit", "custom")

class EventIn(BaseModel):
  model_config = _wire

  # client-generated idempotency key
  event_id: Optional[str] = Field(default=None, alias="eventId")

  # identity fields may be inherited from the batch envelope
  session_id: Optional[str] = Field(default=None, alias="sessionId")
  user_id: Optional[str] = Field(default=None, alias="userId")
  project_id: Optional[str] = Field(default=None, alias="projectId")

  event_type: Optional[str] = Field(default=None, alias="eventType")
  event_name: Optional[str] = Field(default=None, alias="eventName")

  page_url: Optional[str] = Field(default=None, alias="pageURL")
  page_title: Optional[str] = Field(default=None, alias="pageTitle")
  referrer: Optional[str] = None

  element_id: Optional[str] = Field(default=None, alias="elementId")
  element_class: Optional[str] = Field(default=None, alias="elementClass")
  utm_source: Optional[str] = Field(default=None, alias="utmSource")

  # epoch ms from the SDK, ISO strings accepted
  timestamp: Optional[Timestamp] = None

  metadata: Dict[str, Any] = Field(default_factory=dict)

class BatchIn(BaseModel):
  model_config = _wire

  session_id: Optional[str] = Field(default=None, alias="sessionId")
  user_id: Optional[str] = Field(default=None, alias="userId")
  project_id: Optional[str] = Field(default=None, alias="projectId")

  interactions: List[EventIn] = Field(default_factory=list)

class IngestOut(BaseModel):
  message: str
  count: int
  dropped: int = 0
  duplicates: int = 0

class SessionIn(BaseModel):
  model_config = _wire

  session_id: str = Field(..., min_length=1, alias="sessionId")
  user_id: Optional[str] = Field(default=None, alias="userId")
  project_id: Optional[str] = Field(default=None, alias="projectId")

  page_url: Optional[str] = Field(default=None, alias="pageURL")
  referrer: Optional[str] = None
  utm_source: Optional[str] = Field(default=None, alias="utmSource")
  start_time: Optional[Timestamp] = Field(default=None, alias="startTime")

  metadata: Dict[str, Any] = Field(default_factory=dict)

class PerformanceIn(BaseModel):
  model_config = _wire

  session_id: Optional[str] = Field(default=None, alias="sessionId")
  user_id: Optional[str] = Field(default=None, alias="userId")
  project_id: Optional[str] = Field(default=None, alias="projectId")
  page_url: Optional[str] = Field(default=None, alias="pageURL")

  ttfb: float = 0
  fcp: float = 0
  lcp: float = 0
  cls: float = 0
  inp: float = 0
  fid: float = 0
  load_time: float = Field(default=0, alias="loadTime")
  dom_ready_time: float = Field(default=0, alias="domReadyTime")
  dns_time: float = Field(default=0, alias="dnsTime")

  js_errors: List[Dict[str, Any]] = Field(default_factory=list, alias="jsErrors")
  api_calls: List[Dict[str, Any]] = Field(default_factory=list, alias="apiCalls")

  device_type: Optional[str] = Field(default=None, alias="deviceType")
  timestamp: Optional[Timestamp] = None

class RecordingFramesIn(BaseModel):
  model_config = _wire

  session_id: str = Field(..., min_length=1, alias="sessionId")
  user_id: Optional[str] = Field(default=None, alias="userId")
  project_id: Optional[str] = Field(default=None, alias="projectId")
  recording_id: Optional[str] = Field(default=None, alias="recordingId")

  # opaque replay frames
  events: List[Any] = Field(default_factory=list)

from typing import NewType, TypedDict

HttpPath = NewType('HttpPath', str)
BackendUrl = NewType('BackendUrl', str)

QueryParams = dict[str, list[str]]


class HealthResponse(TypedDict):
  status: str
  active: int
  queued: int


class AccessLogRecord(TypedDict):
  message: str
  method: str
  request_uri: str
  domain: str
  remote_addr: str
  status: int
  response_time: float
  http_user_agent: str
  http_referrer: str

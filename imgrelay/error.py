from http import HTTPStatus


class RelayError(Exception):
  status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR


class NotFound(RelayError):
  status = HTTPStatus.NOT_FOUND

  def __init__(self, what: str = 'file not found'):
    super().__init__(what)


class InvalidSignature(RelayError):
  status = HTTPStatus.UNAUTHORIZED

  def __init__(self) -> None:
    super().__init__('invalid signature')


class InvalidOption(RelayError):
  status = HTTPStatus.BAD_REQUEST

  def __init__(self, field: str, reason: str):
    super().__init__(f'{field}: {reason}')
    self.field = field
    self.reason = reason


class InvalidBackend(RelayError):

  def __init__(self, what: str = 'invalid backend'):
    super().__init__(what)


class BackendError(RelayError):
  pass


class TransformError(RelayError):

  def __init__(self, stage: str, detail: str):
    super().__init__(f'{stage}: {detail}')
    self.stage = stage
    self.detail = detail


class HandoffError(RelayError):
  pass

import datetime
import hashlib
import hmac
from typing import Mapping, Optional, Protocol
from urllib import parse

ALGORITHM = 'AWS4-HMAC-SHA256'
LONG_DATETIME_FMT = '%Y%m%dT%H%M%SZ'
SHORT_DATE_FMT = '%Y%m%d'

# SHA-256 of an empty body.
EMPTY_SHA256 = 'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'


class Credentials(Protocol):
  access_key_id: str
  secret_access_key: str
  region: str


def sign(secret: str, payload: str) -> str:
  return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify(secret: str, payload: str, signature: Optional[str]) -> bool:
  if signature is None:
    return False
  try:
    given = bytes.fromhex(signature)
  except ValueError:
    return False
  expected = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).digest()
  return hmac.compare_digest(expected, given)


def hmac_sha256(key: bytes, msg: str) -> bytes:
  return hmac.new(key, msg.encode(), hashlib.sha256).digest()


def sha256_hex(data: str) -> str:
  return hashlib.sha256(data.encode()).hexdigest()


def uri_encode(s: str, encode_slash: bool) -> str:
  # RFC 3986 unreserved characters are kept, everything else is %XX.
  return parse.quote(s, safe='' if encode_slash else '/')


def canonical_uri(url: parse.SplitResult) -> str:
  path = url.path or '/'
  return uri_encode(parse.unquote(path), False)


def canonical_query(url: parse.SplitResult) -> str:
  pairs = [
      f'{uri_encode(k, True)}={uri_encode(v, True)}'
      for k, v in parse.parse_qsl(url.query, keep_blank_values=True)
  ]
  return '&'.join(sorted(pairs))


def canonical_headers(headers: Mapping[str, str]) -> str:
  return '\n'.join(sorted(f'{k.lower()}:{v.strip()}' for k, v in headers.items()))


def signed_headers(headers: Mapping[str, str]) -> str:
  return ';'.join(sorted(k.lower() for k in headers))


def canonical_request(method: str, url: str, headers: Mapping[str, str], body_sha256: str) -> str:
  u = parse.urlsplit(url)
  return '\n'.join([
      method,
      canonical_uri(u),
      canonical_query(u),
      canonical_headers(headers) + '\n',
      signed_headers(headers),
      body_sha256,
  ])


def scope(now: datetime.datetime, region: str, service: str) -> str:
  return f'{now.strftime(SHORT_DATE_FMT)}/{region}/{service}/aws4_request'


def string_to_sign(
    now: datetime.datetime,
    region: str,
    service: str,
    request: str,
) -> str:
  return '\n'.join([
      ALGORITHM,
      now.strftime(LONG_DATETIME_FMT),
      scope(now, region, service),
      sha256_hex(request),
  ])


def signing_key(now: datetime.datetime, secret_key: str, region: str, service: str) -> bytes:
  key = hmac_sha256(f'AWS4{secret_key}'.encode(), now.strftime(SHORT_DATE_FMT))
  key = hmac_sha256(key, region)
  key = hmac_sha256(key, service)
  return hmac_sha256(key, 'aws4_request')


def sigv4_authorization(
    method: str,
    url: str,
    now: datetime.datetime,
    headers: Mapping[str, str],
    credentials: Credentials,
    service: str = 's3',
) -> str:
  """Compute the SigV4 `Authorization` value over exactly `headers`.

  Only the narrow profile needed for S3 GETs is supported: the body is always
  empty and the session token is never sent.
  """
  now = now.astimezone(datetime.timezone.utc)
  request = canonical_request(method, url, headers, EMPTY_SHA256)
  to_sign = string_to_sign(now, credentials.region, service, request)
  key = signing_key(now, credentials.secret_access_key, credentials.region, service)
  signature = hmac_sha256(key, to_sign).hex()

  return (
      f'{ALGORITHM} '
      f'Credential={credentials.access_key_id}/{scope(now, credentials.region, service)},'
      f'SignedHeaders={signed_headers(headers)},'
      f'Signature={signature}')


def sigv4_headers(now: datetime.datetime, url: str, credentials: Credentials) -> dict[str, str]:
  now = now.astimezone(datetime.timezone.utc)
  headers = {
      'host': parse.urlsplit(url).netloc,
      'x-amz-date': now.strftime(LONG_DATETIME_FMT),
      'x-amz-content-sha256': EMPTY_SHA256,
  }
  headers['authorization'] = sigv4_authorization('GET', url, now, headers, credentials)
  return headers

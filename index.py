import uvicorn

from imgrelay.config import get_settings
from imgrelay.server.index import create_app

app = create_app()


def main() -> None:
  settings = get_settings()
  uvicorn.run(
      'index:app',
      host=settings.host,
      port=settings.port,
      log_config=None,
      access_log=False,
  )


if __name__ == '__main__':
  main()

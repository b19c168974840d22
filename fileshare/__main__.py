import uvicorn

from fileshare.config import settings


def main() -> None:
    uvicorn.run("fileshare.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()

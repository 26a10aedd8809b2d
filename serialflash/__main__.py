import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "serialflash.main:app",
        host=os.getenv("SERIALFLASH_HOST", "127.0.0.1"),
        port=int(os.getenv("SERIALFLASH_PORT", "8321")),
    )


if __name__ == "__main__":
    main()

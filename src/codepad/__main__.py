import os

import uvicorn


def main() -> None:
    port = int(os.getenv("PORT", 3001))
    uvicorn.run("codepad.api.app:create_app", factory=True, host=os.getenv("HOST", "0.0.0.0"), port=port)


if __name__ == "__main__":
    main()

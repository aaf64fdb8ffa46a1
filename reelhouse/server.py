from __future__ import annotations

import os

from . import create_app

app = create_app()

if __name__ == "__main__":
    app.run(
        host=os.environ.get("REELHOUSE_HOST", "0.0.0.0"),
        port=int(os.environ.get("REELHOUSE_PORT", "8000")),
    )

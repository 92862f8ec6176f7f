import os

import uvicorn
from dotenv import load_dotenv

from jokepay_x402.config import ServerConfig
from jokepay_x402.http import create_app

load_dotenv()

config = ServerConfig.from_env()
app = create_app(config)


@app.get("/")
async def root():
    return {
        "message": "Paid joke API",
        "endpoints": {
            "free": ["/", "/healthz"],
            "protected": [
                {
                    "path": config.path,
                    "price": f"{config.price_cents / 100:.2f} {config.currency}",
                    "description": "One joke per payment (send X-PAYMENT after the 402)",
                }
            ],
        },
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", str(config.port))))

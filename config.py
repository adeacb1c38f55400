import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))
# Optimistic-lock retries before a coupon redemption gives up with 409
COUPON_MAX_RETRIES = int(os.getenv("COUPON_MAX_RETRIES", "5"))
# Attempts to store an order when its number collides with an existing one
ORDER_NUMBER_MAX_RETRIES = int(os.getenv("ORDER_NUMBER_MAX_RETRIES", "10"))

PORT = int(os.getenv("PORT", "8000"))

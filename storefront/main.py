# storefront/main.py
import uvicorn

from storefront.api import create_app
from storefront.utils.logging import get_logger

logger = get_logger(__name__)

app = create_app()
logger.info("Storefront cart service ready")

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)

import logging
import sys

from dotenv import load_dotenv

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)
logger = logging.getLogger(__name__)

load_dotenv()

from api.routes import create_app

app = create_app()

if __name__ == "__main__":
    # Log startup
    logger.info("Starting Flask server...")
    app.run(debug=True, port=8000)

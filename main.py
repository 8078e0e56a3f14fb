import os
import logging
from flask import Flask
from models import db
from carecore import config

# Configure logging
logging.basicConfig(level=logging.DEBUG,
                   format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Create the Flask app
app = Flask(__name__)

# Configure the app
app.secret_key = os.environ.get("SESSION_SECRET") or "a-development-secret-key"

# Configure the database - SQLite unless SQLALCHEMY_DATABASE_URI is set
app.config["SQLALCHEMY_DATABASE_URI"] = config.DATABASE_URI
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = config.engine_options(config.DATABASE_URI)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

# Print the database URL for debugging
logger.debug(f"Using database URL: {app.config['SQLALCHEMY_DATABASE_URI']}")

# Initialize the database with the app
db.init_app(app)

# Create database tables if they don't exist
with app.app_context():
    # Import models to ensure they're registered
    from models import AuditLogRecord  # noqa: F401
    from carecore.models import ClinicalResource  # noqa: F401
    db.create_all()
    logger.info("Database tables created successfully")

# Import routes after initializing the app to avoid circular imports
from carecore.routes import api_blueprint  # noqa: E402

app.register_blueprint(api_blueprint)

if not config.get_jwt_secret():
    logger.warning("CARECORE_JWT_SECRET is not set; all authenticated requests will be rejected")

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)

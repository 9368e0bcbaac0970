from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    allowed_origins = flask_app.config.get('CORS_ORIGINS', '*')

    db.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Blob storage lives on the app so services can reach it through current_app
    from photoguess.services.rooms.blobs import LocalBlobStore
    flask_app.extensions['photoguess.blobs'] = LocalBlobStore(
        flask_app.config['BLOB_ROOT'],
        flask_app.config.get('BLOB_URL_PREFIX', '/api/blobs'),
    )

    from photoguess.api.rooms import rooms, topics
    flask_app.register_blueprint(rooms, url_prefix='/api/rooms')
    flask_app.register_blueprint(topics, url_prefix='/api')

    from photoguess.api.auth import auth
    flask_app.register_blueprint(auth, url_prefix='/api/auth')

    from photoguess.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from photoguess.models import Account

    @login_manager.user_loader
    def load_user(uid):
        return db.session.get(Account, uid)

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from photoguess.models import seed_default_topics
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            seed_default_topics()
            print('Database has been reset and seeded!')

    flask_app.cli.add_command(db_reset_command)

    return flask_app

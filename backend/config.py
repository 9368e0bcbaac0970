import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///photoguess.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Stage timer: base seconds plus per-player seconds
    BASE_STAGE_SECONDS = int(os.environ.get('BASE_STAGE_SECONDS', '120'))
    TIMER_PER_USER_SEC = int(os.environ.get('TIMER_PER_USER_SEC', '30'))
    # Minimum players before the host can leave the lobby
    MIN_PLAYERS = int(os.environ.get('MIN_PLAYERS', '2'))
    # Photos per player; 0 means no cap
    DEFAULT_MAX_PHOTOS = int(os.environ.get('DEFAULT_MAX_PHOTOS', '1'))
    # Uploaded images
    BLOB_ROOT = os.environ.get('BLOB_ROOT') or os.path.join(os.getcwd(), 'uploads')
    BLOB_URL_PREFIX = os.environ.get('BLOB_URL_PREFIX', '/api/blobs')
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_UPLOAD_MB', '16')) * 1024 * 1024
    # Anonymous sign-in; when off, clients fall back to local identities
    ANONYMOUS_AUTH_ENABLED = os.environ.get('ANONYMOUS_AUTH_ENABLED', '1') == '1'
    # Poll interval (sec) for host-side timer loops
    HOST_TICK_SEC = float(os.environ.get('HOST_TICK_SEC', '0.25'))
    CORS_ORIGINS = [
        o.strip() for o in os.environ.get(
            'CORS_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173'
        ).split(',') if o.strip()
    ]

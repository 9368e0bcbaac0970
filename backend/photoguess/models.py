from photoguess import db
from flask_login import UserMixin
import time
import uuid

DEFAULT_TOPICS = [
    'Whose mommy is this?!',
    'Whose daddy is this?!',
    'Whose parents are these?!',
    'Who drew this?!',
    'Who is this baby?!',
]


def gen_id():
    return uuid.uuid4().hex


class Account(UserMixin, db.Model):
    """A signed-in identity. Anonymous accounts carry no credentials."""
    __tablename__ = 'account'
    uid = db.Column(db.String(64), primary_key=True, default=gen_id)
    display_name = db.Column(db.String(64), nullable=True)
    photo_url = db.Column(db.String(512), nullable=True)
    is_anonymous = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.Float, default=time.time)

    def get_id(self):
        return self.uid

    def to_dict(self):
        return {
            'uid': self.uid,
            'display_name': self.display_name,
            'photo_url': self.photo_url,
            'is_anonymous': self.is_anonymous,
        }


class Room(db.Model):
    __tablename__ = 'room'
    id = db.Column(db.String(32), primary_key=True, default=gen_id)
    status = db.Column(db.String(16), default='join', nullable=False)  # join, upload, guess, results, complete
    game_name = db.Column(db.String(128), nullable=False)
    countdown_enabled = db.Column(db.Boolean, default=False, nullable=False)
    max_photos = db.Column(db.Integer, nullable=True)  # None = no cap
    host_uid = db.Column(db.String(64), nullable=False)
    timer_per_user_seconds = db.Column(db.Integer, default=30, nullable=False)
    round = db.Column(db.Integer, default=1, nullable=False)
    timer_ends_at = db.Column(db.Float, nullable=True)
    timer_started_at = db.Column(db.Float, nullable=True)
    results_index = db.Column(db.Integer, default=0, nullable=False)
    results_applied_at = db.Column(db.Float, nullable=True)
    results_step_at = db.Column(db.Float, nullable=True)  # when the current results photo came up
    created_at = db.Column(db.Float, nullable=False)
    updated_at = db.Column(db.Float, nullable=False)
    completed_at = db.Column(db.Float, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'status': self.status,
            'game_name': self.game_name,
            'countdown_enabled': self.countdown_enabled,
            'max_photos': self.max_photos,
            'host_uid': self.host_uid,
            'timer_per_user_seconds': self.timer_per_user_seconds,
            'round': self.round,
            'timer_ends_at': self.timer_ends_at,
            'timer_started_at': self.timer_started_at,
            'results_index': self.results_index,
            'results_applied_at': self.results_applied_at,
            'results_step_at': self.results_step_at,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'completed_at': self.completed_at,
        }


class RoomUser(db.Model):
    __tablename__ = 'room_user'
    room_id = db.Column(db.String(32), db.ForeignKey('room.id'), primary_key=True)
    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(64), nullable=False)
    avatar_seed = db.Column(db.String(64), nullable=True)
    photo_url = db.Column(db.String(512), nullable=True)
    role = db.Column(db.String(8), default='guest', nullable=False)  # host, guest
    ready = db.Column(db.Boolean, default=False, nullable=False)
    ready_at = db.Column(db.Float, nullable=True)
    score = db.Column(db.Integer, default=0, nullable=False)
    score_updated_at = db.Column(db.Float, nullable=True)
    joined_at = db.Column(db.Float, nullable=False)
    updated_at = db.Column(db.Float, nullable=True)
    connected = db.Column(db.Boolean, default=True, nullable=False)
    token = db.Column(db.String(64), nullable=True)  # never serialised

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'avatar_seed': self.avatar_seed,
            'photo_url': self.photo_url,
            'role': self.role,
            'ready': self.ready,
            'ready_at': self.ready_at,
            'score': self.score,
            'joined_at': self.joined_at,
            'connected': self.connected,
        }


class Photo(db.Model):
    __tablename__ = 'photo'
    id = db.Column(db.String(32), primary_key=True, default=gen_id)
    room_id = db.Column(db.String(32), db.ForeignKey('room.id'), nullable=False, index=True)
    url = db.Column(db.String(512), nullable=False)
    storage_path = db.Column(db.String(512), nullable=True)
    uploaded_by = db.Column(db.String(64), nullable=False)
    uploaded_by_name = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.Float, nullable=False)
    updated_at = db.Column(db.Float, nullable=True)
    guesses = db.relationship('Guess', backref='photo', cascade='all, delete-orphan', lazy='selectin')

    def to_dict(self):
        return {
            'id': self.id,
            'url': self.url,
            'storage_path': self.storage_path,
            'uploaded_by': self.uploaded_by,
            'uploaded_by_name': self.uploaded_by_name,
            'created_at': self.created_at,
            'guesses': {g.guesser_id: g.target_id for g in self.guesses},
        }


class Guess(db.Model):
    """One entry of a photo's guess map: guesser -> guessed uploader."""
    __tablename__ = 'guess'
    __table_args__ = (db.UniqueConstraint('photo_id', 'guesser_id', name='uq_guess_photo_guesser'),)
    id = db.Column(db.Integer, primary_key=True)
    photo_id = db.Column(db.String(32), db.ForeignKey('photo.id'), nullable=False)
    guesser_id = db.Column(db.String(64), nullable=False)
    target_id = db.Column(db.String(64), nullable=False)


class Message(db.Model):
    __tablename__ = 'message'
    id = db.Column(db.String(32), primary_key=True, default=gen_id)
    room_id = db.Column(db.String(32), db.ForeignKey('room.id'), nullable=False, index=True)
    text = db.Column(db.Text, nullable=False)
    user_name = db.Column(db.String(64), nullable=False)
    user_photo = db.Column(db.String(512), nullable=True)
    created_at = db.Column(db.Float, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'text': self.text,
            'user_name': self.user_name,
            'user_photo': self.user_photo,
            'created_at': self.created_at,
        }


class Topic(db.Model):
    __tablename__ = 'topic'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), unique=True, nullable=False)
    used_count = db.Column(db.Integer, default=0, nullable=False)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'used_count': self.used_count}


def seed_default_topics():
    for name in DEFAULT_TOPICS:
        if not Topic.query.filter_by(name=name).first():
            db.session.add(Topic(name=name, used_count=0))
    db.session.commit()

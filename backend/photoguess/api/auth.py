from flask import Blueprint, jsonify, request
from flask_login import logout_user

from photoguess.services.identity import AccountIdentityProvider, IdentityResolver, SessionIdentityStore

auth = Blueprint('auth', __name__)


def _resolver():
    return IdentityResolver(AccountIdentityProvider(), SessionIdentityStore())


@auth.route('/anonymous', methods=['POST'])
def sign_in_anonymously():
    resolver = _resolver()
    existing = resolver.current()
    identity = resolver.ensure_user()
    if existing and existing.uid == identity.uid:
        return jsonify({'user': identity.to_dict()})
    return jsonify({'user': identity.to_dict()}), 201


@auth.route('/me', methods=['GET'])
def me():
    identity = _resolver().current()
    if identity is None:
        return jsonify({'error': 'Not signed in'}), 401
    return jsonify({'user': identity.to_dict()})


@auth.route('/profile', methods=['POST'])
def update_profile():
    resolver = _resolver()
    if resolver.current() is None:
        return jsonify({'error': 'Not signed in'}), 401
    data = request.get_json(silent=True) or {}
    display_name = data.get('display_name')
    if display_name is not None:
        display_name = str(display_name).strip() or 'Guest'
    identity = resolver.apply_profile(display_name=display_name, photo_url=data.get('photo_url'))
    return jsonify({'user': identity.to_dict()})


@auth.route('/logout', methods=['POST'])
def logout():
    logout_user()
    SessionIdentityStore().write(None)
    return jsonify({'message': 'Logged out successfully.'})

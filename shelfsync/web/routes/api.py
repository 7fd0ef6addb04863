"""
JSON control API for the Shelf Sync Service.

Every route hands its work to the engine's event loop and answers with the
resulting state.
"""

from typing import Any, Callable, Dict

from flask import Blueprint, current_app, jsonify, request

from shelfsync.api.base import APIError, NotFoundError
from shelfsync.auth import AuthState
from shelfsync.sync.models import (
    AuthorDisplayItem,
    Book,
    BookList,
    DisplayItem,
    Error,
    Loaded,
    Loading,
    REMOVE_FROM_ALL_SHELVES,
    ShelfSortOrder,
    SyncState,
)
from shelfsync.sync.store import StoreDisposedError
from shelfsync.utils.logging import get_logger

logger = get_logger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _book_list_to_dict(book_list: BookList) -> Dict[str, Any]:
    return {
        'url': book_list.url,
        'id': book_list.list_id,
        'name': book_list.name,
        'seed_count': book_list.seed_count,
        'full_url': book_list.full_url,
        'last_update': book_list.last_update.isoformat() if book_list.last_update else None,
    }


def _display_item_to_dict(item: DisplayItem) -> Dict[str, Any]:
    return {
        'type': 'author' if isinstance(item, AuthorDisplayItem) else 'book',
        'id': item.id,
        'primary_text': item.primary_text,
        'secondary_text': item.secondary_text,
        'cover_image_id': item.cover_image_id,
    }


def serialize_state(state: SyncState) -> Dict[str, Any]:
    """Render a state snapshot as JSON-compatible data."""
    if isinstance(state, Loaded):
        return {
            'status': 'loaded',
            'shelves': [shelf.to_dict() for shelf in state.shelves],
            'book_lists': [_book_list_to_dict(l) for l in state.book_lists],
            'is_refreshing': state.is_refreshing,
            'selected_list_url': state.selected_list_url,
            'list_items': [_display_item_to_dict(item) for item in state.list_items],
            'is_loading_list_items': state.is_loading_list_items,
        }
    if isinstance(state, Error):
        return {'status': 'error', 'message': state.message}
    if isinstance(state, Loading):
        return {'status': 'loading'}
    return {'status': 'initial'}


def _runner():
    return current_app.extensions['shelfsync']


def _payload() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def _book_from_payload(payload: Dict[str, Any]) -> Book:
    data = payload.get('book')
    if not isinstance(data, dict) or not data.get('work_id'):
        raise ValueError("Request must include a book with a work_id")
    return Book.from_dict(data)


def _execute(operation: Callable[[Any], Any]):
    """
    Run an engine operation on the engine loop and report the new state.

    Args:
        operation: Called with the engine; returns a coroutine or a plain value
    """
    runner = _runner()
    if runner.engine is None:
        return jsonify({'success': False, 'error': 'Sync engine not configured'}), 400

    try:
        result = runner.call(operation)
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except StoreDisposedError as e:
        return jsonify({'success': False, 'error': str(e)}), 503
    except NotFoundError as e:
        return jsonify({'success': False, 'error': e.message}), 404
    except APIError as e:
        logger.error("Engine operation failed", path=request.path, error=str(e))
        return jsonify({'success': False, 'error': e.message}), 502

    response = {'success': result is not False, 'state': serialize_state(runner.engine.state)}
    if result is not None and not isinstance(result, bool):
        response['result'] = result
    return jsonify(response)


@api_bp.route('/state')
def get_state():
    """Get the current shelf state."""
    runner = _runner()
    if runner.engine is None:
        return jsonify({'status': 'unconfigured'})
    return jsonify(serialize_state(runner.engine.state))


@api_bp.route('/auth', methods=['POST'])
def set_auth_state():
    """Drive the auth state, e.g. after a login flow finished."""
    value = _payload().get('state')
    try:
        state = AuthState(value)
    except ValueError:
        return jsonify({'success': False, 'error': f'Unknown auth state: {value}'}), 400

    runner = _runner()
    runner.call(lambda engine: runner.auth.set_state(state))
    return jsonify({'success': True, 'state': runner.auth.state.value})


@api_bp.route('/shelves/load', methods=['POST'])
def load_shelves():
    force = bool(_payload().get('force_refresh', False))
    return _execute(lambda engine: engine.load_shelves(force_refresh=force))


@api_bp.route('/shelves/refresh', methods=['POST'])
def refresh_shelves():
    return _execute(lambda engine: engine.refresh_shelves())


@api_bp.route('/shelves/<key>/refresh', methods=['POST'])
def refresh_shelf(key):
    if request.args.get('if_stale'):
        async def operation(engine):
            return {'refreshed': await engine.refresh_shelf_if_stale(key)}

        return _execute(operation)
    return _execute(lambda engine: engine.refresh_shelf(key))


@api_bp.route('/shelves/<key>/sort', methods=['POST'])
def update_shelf_sort(key):
    payload = _payload()
    try:
        order = ShelfSortOrder(payload.get('order'))
    except ValueError:
        return jsonify({'success': False, 'error': f"Unknown sort order: {payload.get('order')}"}), 400
    ascending = bool(payload.get('ascending', True))
    return _execute(lambda engine: engine.update_shelf_sort(key, order, ascending))


@api_bp.route('/shelves/<key>/visibility', methods=['POST'])
def update_shelf_visibility(key):
    visible = bool(_payload().get('visible', True))
    return _execute(lambda engine: engine.update_shelf_visibility(key, visible))


@api_bp.route('/books/move', methods=['POST'])
def move_book():
    payload = _payload()
    target = payload.get('target_shelf') or REMOVE_FROM_ALL_SHELVES

    def operation(engine):
        return engine.move_book_to_shelf(_book_from_payload(payload), target)

    return _execute(operation)


@api_bp.route('/books/remove', methods=['POST'])
def remove_book():
    payload = _payload()
    shelf = payload.get('shelf')
    if not shelf:
        return jsonify({'success': False, 'error': 'Request must include a shelf'}), 400

    def operation(engine):
        return engine.remove_book_from_shelf(_book_from_payload(payload), shelf)

    return _execute(operation)


@api_bp.route('/books/refresh', methods=['POST'])
def refresh_book():
    payload = _payload()
    shelf = payload.get('shelf')
    if not shelf:
        return jsonify({'success': False, 'error': 'Request must include a shelf'}), 400

    def operation(engine):
        return engine.refresh_book(_book_from_payload(payload), shelf)

    return _execute(operation)


@api_bp.route('/loans/<edition_id>')
def get_loan(edition_id):
    runner = _runner()
    if runner.engine is None:
        return jsonify({'success': False, 'error': 'Sync engine not configured'}), 400
    engine = runner.engine
    return jsonify({
        'edition_id': edition_id,
        'loan': runner.call(lambda e: e.loan_for_edition(edition_id)),
        'minutes_remaining': runner.call(lambda e: e.loan_minutes_remaining(edition_id)),
        'authenticated': engine.auth.is_authenticated,
    })


@api_bp.route('/loans/refresh', methods=['POST'])
def refresh_loans():
    return _execute(lambda engine: engine.refresh_user_loans())


@api_bp.route('/lists/select', methods=['POST'])
def select_list():
    payload = _payload()
    url = payload.get('url')
    if not url:
        return jsonify({'success': False, 'error': 'Request must include a list url'}), 400
    force = bool(payload.get('force_refresh', False))
    return _execute(lambda engine: engine.select_list(url, force_refresh=force))


@api_bp.route('/lists/clear', methods=['POST'])
def clear_list_selection():
    return _execute(lambda engine: engine.clear_list_selection())


@api_bp.route('/lists/refresh', methods=['POST'])
def refresh_current_list():
    return _execute(lambda engine: engine.refresh_current_list())


@api_bp.route('/lists/add', methods=['POST'])
def add_book_to_list():
    payload = _payload()
    url = payload.get('url')
    if not url:
        return jsonify({'success': False, 'error': 'Request must include a list url'}), 400

    def operation(engine):
        return engine.add_book_to_list(_book_from_payload(payload), url)

    return _execute(operation)


@api_bp.route('/lists/remove', methods=['POST'])
def remove_book_from_current_list():
    payload = _payload()
    return _execute(lambda engine: engine.remove_book_from_current_list(_book_from_payload(payload)))


@api_bp.route('/shelves/configure', methods=['POST'])
def configure_shelves():
    keys = _payload().get('keys')
    if not isinstance(keys, list) or not all(isinstance(key, str) for key in keys):
        return jsonify({'success': False, 'error': 'Request must include a list of shelf keys'}), 400
    return _execute(lambda engine: engine.update_configured_shelves(keys))


@api_bp.route('/books/<book_id>/adjustment', methods=['GET'])
def get_visual_adjustment(book_id):
    runner = _runner()
    if runner.engine is None:
        return jsonify({'success': False, 'error': 'Sync engine not configured'}), 400
    try:
        settings = runner.call(lambda engine: engine.get_visual_adjustment(book_id))
    except APIError as e:
        return jsonify({'success': False, 'error': e.message}), 502
    if settings is None:
        return jsonify({'success': False, 'error': f'No adjustment for {book_id}'}), 404
    return jsonify({'success': True, 'book_id': book_id, 'settings': settings})


@api_bp.route('/books/<book_id>/adjustment', methods=['PUT'])
def save_visual_adjustment(book_id):
    settings = _payload().get('settings')
    if not isinstance(settings, dict):
        return jsonify({'success': False, 'error': 'Request must include settings'}), 400
    return _execute(lambda engine: engine.save_visual_adjustment(book_id, settings))

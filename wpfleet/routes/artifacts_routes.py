"""
Artifact routes - backups available on the remote store.
"""

from flask import Blueprint, current_app, jsonify, request

from wpfleet.backup.errors import StorageError
from wpfleet.backup.service import SOURCE_MIGRATE, SOURCE_REMOTE, build_store, group_artifacts, list_artifacts


bp = Blueprint('artifacts', __name__, url_prefix='/api/artifacts')


def _source():
    source = request.args.get('source', SOURCE_REMOTE)
    if source not in (SOURCE_REMOTE, SOURCE_MIGRATE):
        return None
    return source


@bp.route('', methods=['GET'])
def list_domains():
    """
    List the site prefixes present on the store.

    Query params:
        - source: remote (default) or migrate
    """
    source = _source()
    if source is None:
        return jsonify({'error': 'Invalid source'}), 400

    try:
        domains = build_store(source).list_prefixes()
    except StorageError as e:
        current_app.logger.error(f"Failed to list store prefixes: {e}")
        return jsonify({'error': str(e)}), 502

    return jsonify({'source': source, 'domains': domains})


@bp.route('/<domain>', methods=['GET'])
def list_domain_artifacts(domain):
    """
    List a site's artifacts grouped by class, newest first.

    Query params:
        - source: remote (default) or migrate
    """
    source = _source()
    if source is None:
        return jsonify({'error': 'Invalid source'}), 400

    try:
        artifacts = list_artifacts(domain, source)
    except StorageError as e:
        current_app.logger.error(f"Failed to list artifacts for {domain}: {e}")
        return jsonify({'error': str(e)}), 502

    return jsonify({
        'domain': domain,
        'source': source,
        'classes': group_artifacts(artifacts),
        'total': len(artifacts),
    })

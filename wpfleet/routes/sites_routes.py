"""
Site routes - discovered WordPress installations.
"""

from flask import Blueprint, current_app, jsonify

from wpfleet.backup.errors import DiscoveryError
from wpfleet.backup.service import discover


bp = Blueprint('sites', __name__, url_prefix='/api/sites')


@bp.route('', methods=['GET'])
def list_sites():
    """
    List the sites found under SITES_ROOT.

    Credentials are never returned; only whether a database name was found.

    Returns:
        JSON with site list
    """
    try:
        sites = discover()
    except DiscoveryError as e:
        current_app.logger.error(f"Site discovery failed: {e}")
        return jsonify({'error': str(e)}), 500

    return jsonify({
        'root': current_app.config['SITES_ROOT'],
        'sites': [
            {
                'domain': site.domain,
                'root_path': str(site.root_path),
                'database_name': site.database_name or None,
                'valid': site.valid,
            }
            for site in sites
        ],
        'total': len(sites),
    })

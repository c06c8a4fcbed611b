#!/usr/bin/env python3
"""Development server runner"""
import os
from wpfleet import create_app

if __name__ == '__main__':
    app = create_app('development')

    # Read-only API on localhost by default: it lists sites and backups
    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', 5000))
    app.run(host=host, port=port, debug=True)

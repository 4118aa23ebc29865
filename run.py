#!/usr/bin/env python3
"""Development server runner for the read-only status API"""
import os
from hostkeep import create_app

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    # Local only: the API exposes backup paths and history
    port = int(os.environ.get('PORT', 5000))
    app.run(host='127.0.0.1', port=port, debug=True)

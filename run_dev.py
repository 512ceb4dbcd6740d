#!/usr/bin/env python3
"""
Development server startup script for the quote portal
"""
import os
import sys

import django
from django.core.management import execute_from_command_line


def main():
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'portal_site.settings')

    project_dir = os.path.dirname(os.path.abspath(__file__))
    sys.path.insert(0, project_dir)

    django.setup()

    execute_from_command_line(['manage.py', 'migrate'])

    # Totals written before the tax-rate cleanup may be stale; rates must be percent first.
    execute_from_command_line(['manage.py', 'normalize_tax_rates'])
    execute_from_command_line(['manage.py', 'recalculate_quote_totals'])

    address = os.getenv('DEV_SERVER_ADDRESS', '127.0.0.1:8000')
    print("🚀 Starting quote portal development server...")
    print(f"📍 API available at: http://{address}/api/")
    print("🛑 Press Ctrl+C to stop the server")
    print("-" * 50)

    execute_from_command_line(['manage.py', 'runserver', address])


if __name__ == '__main__':
    main()

#!/usr/bin/env python3
"""Validate cve-feeds settings YAML files."""
import yaml
import sys
import os

KNOWN_KEYS = ('mitre_csv_url', 'nvd_feed_url', 'staging_dir')


def validate_config(path):
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        return [f'top level must be a mapping, got {type(data).__name__}']

    errors = []

    unknown = sorted(k for k in data if k not in KNOWN_KEYS)
    if unknown:
        errors.append(f'unknown keys: {unknown}')

    for key in KNOWN_KEYS:
        if key in data and data[key] is not None:
            if not isinstance(data[key], str):
                errors.append(f'{key} must be a string, got {type(data[key]).__name__}')
            elif not data[key].strip():
                errors.append(f'{key} is empty')

    url = data.get('nvd_feed_url')
    if isinstance(url, str) and url.strip() and '{year}' not in url:
        errors.append('nvd_feed_url must contain a {year} placeholder')

    for key in ('mitre_csv_url', 'nvd_feed_url'):
        url = data.get(key)
        if isinstance(url, str) and url.strip() and not url.startswith(('http://', 'https://')):
            errors.append(f'{key} must be an http(s) URL')

    return errors


if __name__ == '__main__':
    paths = sys.argv[1:] or ['feeds.yaml']
    if os.path.exists('feeds.example.yaml') and 'feeds.example.yaml' not in paths:
        paths.append('feeds.example.yaml')

    for path in paths:
        if not os.path.exists(path):
            print(f'❌ {path} not found')
            sys.exit(1)
        errors = validate_config(path)
        if errors:
            print(f'❌ {path} validation failed:')
            for e in errors:
                print(f'   - {e}')
            sys.exit(1)

    print('✅ Settings files validated successfully')

"""
Replays a full reverse pickup against a running dev server.

Set the AWB on an approved return in the Django admin first, then:

    SHIPROCKET_WEBHOOK_SECRET=... python scripts/webhook_smoke.py RAWB123 <return_id>

Admin credentials for the final timeline come from SMOKE_ADMIN_USER / SMOKE_ADMIN_PASSWORD.
"""

import hashlib
import hmac
import json
import os
import sys

import requests

BASE = os.getenv('SMOKE_BASE_URL', 'http://127.0.0.1:8000/api/v1/returns')
SECRET = os.getenv('SHIPROCKET_WEBHOOK_SECRET', '')
ADMIN = (os.getenv('SMOKE_ADMIN_USER', 'admin'), os.getenv('SMOKE_ADMIN_PASSWORD', 'admin'))

SCANS = [
    (2, 'PICKUP SCHEDULED', '2024-01-18 09:00:00'),
    (42, 'PICKED UP', '2024-01-18 12:30:00'),
    (18, 'IN TRANSIT', '2024-01-19 08:00:00'),
    (7, 'DELIVERED', '2024-01-20 14:05:00'),
]


def post_scan(awb, status_id, label, timestamp):
    body = json.dumps({
        'awb': awb,
        'shipment_status_id': status_id,
        'shipment_status': label,
        'current_timestamp': timestamp,
        'courier_name': 'Delhivery',
        'is_return': 1,
        'scans': [{'date': timestamp, 'activity': label, 'location': 'Mumbai'}],
    })
    signature = hmac.new(SECRET.encode('utf-8'), body.encode('utf-8'), hashlib.sha256).hexdigest()
    r = requests.post(
        f'{BASE}/webhooks/reverse-pickup/',
        data=body,
        headers={'Content-Type': 'application/json', 'anx-api-key': signature},
        timeout=10,
    )
    return r.json()


def main():
    if len(sys.argv) != 3:
        print(__doc__)
        return 1
    awb, return_id = sys.argv[1], sys.argv[2]

    for step, (status_id, label, timestamp) in enumerate(SCANS, start=1):
        data = post_scan(awb, status_id, label, timestamp)
        print(f"STEP {step} - {label}: {data.get('current_status')} | {data['message']}")

    # Replaying the delivery must not change anything
    data = post_scan(awb, *SCANS[-1])
    print(f"REPLAY - {data.get('current_status')} | {data['message']}")

    r = requests.get(f'{BASE}/admin/{return_id}/', auth=ADMIN, timeout=10)
    data = r.json()['data']
    print(f"\nFULL TIMELINE for {data['return_number']}:")
    print("-" * 80)
    for entry in data['status_history']:
        fr = entry['from_status'] or 'NEW'
        print(f"  {fr:20s} → {entry['to_status']:20s} by {entry['changed_by']:18s} {entry['comment']}")
    return 0


if __name__ == '__main__':
    sys.exit(main())

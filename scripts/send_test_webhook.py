import argparse
import json
import logging

import requests
from dotenv import load_dotenv

# Set up logging
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

load_dotenv()

def build_message(phone_number, content, audio_url=None):
    """A Chatwoot message_created delivery for a WhatsApp inbox"""
    payload = {
        'event': 'message_created',
        'id': 1001,
        'content': content,
        'content_type': 'audio' if audio_url else 'text',
        'message_type': 'incoming',
        'sender': {
            'id': 42,
            'name': 'Test Contact',
            'type': 'contact',
            'phone_number': phone_number,
        },
        'conversation': {
            'id': 7,
            'channel': 'Channel::Whatsapp',
            'status': 'open',
            'contact_inbox': {'source_id': phone_number.lstrip('+')},
        },
        'account': {'id': 1, 'name': 'Test Account'},
        'inbox': {'id': 1, 'name': 'WhatsApp'},
    }
    if audio_url:
        payload['attachments'] = [{
            'id': 555,
            'message_id': 1001,
            'file_type': 'audio',
            'data_url': audio_url,
        }]
    return payload

def send_webhook(base_url, payload):
    try:
        logger.info("Sending test webhook...")
        logger.debug(f"Webhook data: {json.dumps(payload, indent=2)}")

        response = requests.post(f"{base_url}/chatwoot-webhook", json=payload)

        logger.info(f"Response status: {response.status_code}")
        logger.info(f"Response body: {response.text}")
        return response.status_code == 200

    except requests.RequestException:
        logger.error("Webhook request failed:", exc_info=True)
        return False

def verify_server(base_url):
    """Verify the server is running and responding"""
    try:
        response = requests.get(f"{base_url}/test")
        logger.info(f"Server health check status: {response.status_code}")
        return response.status_code == 200
    except requests.RequestException:
        logger.error("Server health check failed:", exc_info=True)
        return False

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Send a sample Chatwoot webhook to a local server")
    parser.add_argument('--url', default='http://localhost:8000')
    parser.add_argument('--phone', default='+5511987654321')
    parser.add_argument('--content', default='Hello, this is a test message')
    parser.add_argument('--audio-url')
    args = parser.parse_args()

    if verify_server(args.url):
        ok = send_webhook(args.url, build_message(args.phone, args.content, args.audio_url))
        logger.info("Webhook accepted" if ok else "Webhook was not accepted")

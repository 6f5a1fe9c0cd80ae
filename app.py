import asyncio
import logging
import sys
from typing import Optional

import aiohttp
from dotenv import load_dotenv
from flask import Flask, jsonify, request

from api.services.buckets import BucketManager
from api.services.identity import IdentityResolver
from api.services.records import RecordStore
from api.services.storage import GCSStorageGateway
from api.user_bucket_handler import IDENTIFY_AND_ENSURE_BUCKET, UserBucketHandler
from api.webhook_handler import ChatwootWebhookProcessor, ProcessingResult
from lib.config import Settings, get_settings
from lib.error_handler import AppError
from lib.gcs_auth import GCSTokenProvider

load_dotenv()

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
}
ALL_METHODS = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS']

def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout,
        force=True
    )

async def run_webhook(settings: Settings, records: RecordStore, payload) -> ProcessingResult:
    async with aiohttp.ClientSession() as session:
        processor = ChatwootWebhookProcessor.from_settings(settings, records, session)
        return await processor.process_webhook(payload)

async def run_user_bucket(settings: Settings, records: RecordStore, body: dict) -> dict:
    async with aiohttp.ClientSession() as session:
        storage = GCSStorageGateway(settings, session, GCSTokenProvider(settings, session))
        handler = UserBucketHandler(
            IdentityResolver(records, settings.default_country_code),
            BucketManager(records, storage, settings.gcs_bucket_prefix)
        )
        return await handler.identify_and_ensure_bucket(
            whatsapp_number=body.get('whatsappNumber'),
            contact_id=body.get('contactId'),
            user_id=body.get('userId')
        )

def create_app(settings: Optional[Settings] = None, records: Optional[RecordStore] = None) -> Flask:
    settings = settings or get_settings()
    app = Flask(__name__)
    state = {'records': records}

    def get_records() -> RecordStore:
        if state['records'] is None:
            state['records'] = RecordStore.from_settings(settings)
        return state['records']

    def method_not_allowed():
        return jsonify({'error': 'Method not allowed'}), 405, CORS_HEADERS

    @app.route("/test", methods=['GET'])
    def test():
        """Test endpoint to verify server is running"""
        return jsonify({
            "status": "ok",
            "message": "Server is running"
        })

    @app.route("/chatwoot-webhook", methods=ALL_METHODS)
    def chatwoot_webhook():
        """Handle incoming message webhooks from Chatwoot"""
        if request.method == 'OPTIONS':
            return '', 200, CORS_HEADERS
        if request.method != 'POST':
            return method_not_allowed()

        try:
            payload = request.get_json(silent=True)
            logger.info("Received webhook from Chatwoot")
            result = asyncio.run(run_webhook(settings, get_records(), payload))
            return jsonify(result.to_dict()), result.status_code, CORS_HEADERS

        except Exception as e:
            logger.error(f"Webhook processing error: {str(e)}", exc_info=True)
            return jsonify({
                'success': False,
                'message': 'Internal server error',
                'error': str(e)
            }), 500, CORS_HEADERS

    @app.route("/user-bucket", methods=ALL_METHODS)
    def user_bucket():
        """Identify a user by WhatsApp number and ensure their bucket exists"""
        if request.method == 'OPTIONS':
            return '', 200, CORS_HEADERS
        if request.method != 'POST':
            return method_not_allowed()

        body = request.get_json(silent=True) or {}
        if body.get('action') != IDENTIFY_AND_ENSURE_BUCKET:
            return jsonify({'error': 'Invalid action'}), 400, CORS_HEADERS

        try:
            data = asyncio.run(run_user_bucket(settings, get_records(), body))
            return jsonify({'success': True, 'data': data}), 200, CORS_HEADERS

        except AppError as e:
            logger.error(f"User bucket service error: {e.message}")
            return jsonify({
                'success': False,
                'error': 'Internal server error',
                'details': e.message
            }), 500, CORS_HEADERS
        except Exception as e:
            logger.error(f"User bucket service error: {str(e)}", exc_info=True)
            return jsonify({
                'success': False,
                'error': 'Internal server error',
                'details': str(e)
            }), 500, CORS_HEADERS

    return app

configure_logging(get_settings())
app = create_app()

if __name__ == "__main__":
    logger.info("Starting Flask server...")
    app.run(debug=True, port=8000)

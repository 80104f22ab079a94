# app.py
import json
import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from errors import EngineUnavailable, ImageDecodeError, RecognitionTimeout, RenderingUnavailable
from imaging import compress_image
from ocr import OCR_TIMEOUT_SECONDS, process_receipt_images_sync
from receipt_parser import parse
from split_calc import compute_splits, has_detected_data, tax_percent
from utils import find_currency

load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

NO_DATA_MESSAGE = 'No data detected in receipt. Please try another image or add items manually.'


def _participants_from_form(raw):
    if not raw:
        return []
    try:
        names = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(names, list):
        return []
    return [str(n).strip() for n in names if str(n).strip()]


@app.errorhandler(RecognitionTimeout)
def recognition_timeout(exc):
    logger.error("OCR timed out: %s", exc)
    return jsonify({'error': 'recognition timed out'}), 504


@app.errorhandler(EngineUnavailable)
def engine_unavailable(exc):
    logger.error("OCR engine unavailable: %s", exc)
    return jsonify({'error': 'recognition engine unavailable'}), 503


@app.errorhandler(RenderingUnavailable)
def rendering_unavailable(exc):
    logger.error("Preprocessing failed: %s", exc)
    return jsonify({'error': 'image preprocessing unavailable'}), 500


@app.route('/health')
def health():
    return 'ok'


@app.route('/process', methods=['POST'])
def process():
    # expects multipart form-data with one or more 'image' files and optional 'participants' json list
    files = [f for f in request.files.getlist('image') if f and f.filename]
    if not files:
        return jsonify({'error': 'image missing'}), 400
    participants = _participants_from_form(request.form.get('participants'))

    images = []
    for f in files:
        try:
            images.append(compress_image(f.read()))
        except ImageDecodeError as exc:
            logger.warning("Skipping upload %s: %s", f.filename, exc)
    if not images:
        return jsonify({'error': 'no decodable image'}), 400

    ocr = process_receipt_images_sync(images, timeout=OCR_TIMEOUT_SECONDS)
    parsed = parse(ocr.text)
    body = {
        'ocr_text': ocr.text,
        'confidence': round(ocr.confidence, 2),
        'currency': find_currency(ocr.text),
        'parsed': parsed.to_dict(),
        'tax_percent': tax_percent(parsed),
        'splits': compute_splits(parsed, participants),
    }
    if not has_detected_data(parsed):
        body['message'] = NO_DATA_MESSAGE
    return jsonify(body)


if __name__ == '__main__':
    port = int(os.getenv('FLASK_PORT', 5000))
    app.run(host='0.0.0.0', port=port)

"""
Signature and photo validation for proof of delivery.

Everything here is a pure function of its arguments (plus configuration read
from settings): no database access and no files written. The orchestrator
calls these before anything is persisted and the models call them again to
audit stored signatures.
"""
import io
import hmac
import math
import hashlib
import logging
from decimal import Decimal, InvalidOperation
from PIL import Image, UnidentifiedImageError
from django.conf import settings

from core_service.helpers import decode_base64

logger = logging.getLogger(__name__)

MIN_SIGNATURE_LENGTH = 100
MIN_STROKE_POINTS = 10
# A stroke whose points all sit within this many pixels of the chord is a straight line
STRAIGHT_LINE_TOLERANCE = 2.0
LOW_QUALITY_WARNING = 0.85

# Full marks for each factor
FULL_STROKE_COUNT = 4
FULL_POINT_COUNT = 60
FULL_COVERAGE_RATIO = 0.25
FULL_INK_RATIO = 0.01

WEIGHT_STROKES = 0.30
WEIGHT_DENSITY = 0.30
WEIGHT_COVERAGE = 0.25
WEIGHT_INK = 0.15
STRAIGHT_LINE_PENALTY = 0.2


def default_canvas_size():
    return settings.SIGNATURE_CANVAS_WIDTH, settings.SIGNATURE_CANVAS_HEIGHT


def parse_strokes(strokes):
    """
    Normalise stroke data into a list of strokes, each a list of (x, y) floats.
    Points may be [x, y] pairs or {"x": .., "y": ..} objects. Raises ValueError
    for anything else.
    """
    if strokes is None:
        return []
    if not isinstance(strokes, (list, tuple)):
        raise ValueError("Stroke data must be a list of strokes")

    parsed = []
    for stroke in strokes:
        if not isinstance(stroke, (list, tuple)):
            raise ValueError("Each stroke must be a list of points")
        points = []
        for point in stroke:
            if isinstance(point, dict):
                x, y = point.get('x'), point.get('y')
            elif isinstance(point, (list, tuple)) and len(point) >= 2:
                x, y = point[0], point[1]
            else:
                raise ValueError("Each point must be an [x, y] pair or an object with x and y")
            try:
                points.append((float(x), float(y)))
            except (TypeError, ValueError):
                raise ValueError("Point coordinates must be numbers")
        if points:
            parsed.append(points)
    return parsed


def is_straight_line(stroke, tolerance=STRAIGHT_LINE_TOLERANCE):
    if len(stroke) < 3:
        return True
    (x0, y0), (x1, y1) = stroke[0], stroke[-1]
    chord = math.hypot(x1 - x0, y1 - y0)
    if chord == 0:
        return all(math.hypot(x - x0, y - y0) <= tolerance for x, y in stroke)
    deviation = max(abs((x1 - x0) * (y0 - y) - (x0 - x) * (y1 - y0)) / chord for x, y in stroke)
    return deviation <= tolerance


def ink_ratio(image):
    """Share of dark pixels in the signature image, transparent areas counted as paper"""
    if image.mode in ('RGBA', 'LA') or (image.mode == 'P' and 'transparency' in image.info):
        rgba = image.convert('RGBA')
        paper = Image.new('RGBA', rgba.size, (255, 255, 255, 255))
        paper.alpha_composite(rgba)
        gray = paper.convert('L')
    else:
        gray = image.convert('L')

    total = gray.width * gray.height
    if not total:
        return 0.0
    return sum(gray.histogram()[:128]) / total


def calculate_signature_quality(strokes, canvas_size=None, image=None):
    """
    Score a signature between 0 and 1 from stroke count, point density,
    canvas coverage and, when the image is available, the amount of ink.
    Signatures made mostly of straight lines are penalised.
    """
    parsed = parse_strokes(strokes)
    if not parsed:
        return 0.0

    width, height = canvas_size or default_canvas_size()
    points = [point for stroke in parsed for point in stroke]
    xs = [x for x, _ in points]
    ys = [y for _, y in points]

    stroke_score = min(1.0, len(parsed) / FULL_STROKE_COUNT)
    density_score = min(1.0, len(points) / FULL_POINT_COUNT)
    coverage = ((max(xs) - min(xs)) * (max(ys) - min(ys))) / float(width * height) if width and height else 0.0
    coverage_score = min(1.0, coverage / FULL_COVERAGE_RATIO)

    score = WEIGHT_STROKES * stroke_score + WEIGHT_DENSITY * density_score + WEIGHT_COVERAGE * coverage_score
    if image is not None:
        score += WEIGHT_INK * min(1.0, ink_ratio(image) / FULL_INK_RATIO)
    else:
        score = score / (1 - WEIGHT_INK)

    straight = sum(1 for stroke in parsed if is_straight_line(stroke))
    if straight / len(parsed) > 0.5:
        score -= STRAIGHT_LINE_PENALTY

    return round(max(0.0, min(1.0, score)), 3)


def estimate_progress(strokes, canvas_size=None):
    """Running feedback while the recipient is still drawing"""
    parsed = parse_strokes(strokes)
    return {
        'stroke_count': len(parsed),
        'point_count': sum(len(stroke) for stroke in parsed),
        'quality_estimate': calculate_signature_quality(parsed, canvas_size),
    }


def decode_image(data):
    """Decode a base64 image into a loaded PIL image; ValueError when it is not one"""
    raw = decode_base64(data)
    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Not a readable image: {e}")
    return image


def validate_signature(data: dict) -> dict:
    """
    Validate a captured signature.

    data holds signature_data (base64 image, data URI accepted), strokes and
    optionally canvas_width / canvas_height. Returns
    {valid, quality_score, errors, warnings}.
    """
    errors, warnings = [], []
    signature_data = data.get('signature_data') or ''
    strokes = data.get('strokes', data.get('stroke_data'))

    try:
        width = int(data.get('canvas_width') or settings.SIGNATURE_CANVAS_WIDTH)
        height = int(data.get('canvas_height') or settings.SIGNATURE_CANVAS_HEIGHT)
    except (TypeError, ValueError):
        errors.append('Canvas dimensions must be whole numbers')
        width, height = default_canvas_size()

    image = None
    if len(signature_data) < MIN_SIGNATURE_LENGTH:
        errors.append('Signature data is too short')
    else:
        try:
            image = decode_image(signature_data)
        except ValueError as e:
            logger.info(f"Rejected signature image: {e}")
            errors.append('Invalid signature data format')

    try:
        parsed = parse_strokes(strokes)
    except ValueError as e:
        errors.append(f'Invalid stroke data: {e}')
        parsed = None

    quality = 0.0
    if parsed is not None:
        if not parsed:
            errors.append('Signature has no strokes')
        elif sum(len(stroke) for stroke in parsed) < MIN_STROKE_POINTS:
            errors.append('Signature is too short')
        quality = calculate_signature_quality(parsed, (width, height), image)

    threshold = settings.SIGNATURE_MIN_QUALITY
    if quality < threshold:
        errors.append(f'Signature quality {quality:.2f} is below the required {threshold:.2f}')
    elif quality < LOW_QUALITY_WARNING:
        warnings.append('Signature quality is acceptable but low')

    return {
        'valid': not errors,
        'quality_score': quality,
        'errors': errors,
        'warnings': warnings,
    }


def calculate_signature_hash(signature_data) -> str:
    return hashlib.sha256((signature_data or '').encode('utf-8')).hexdigest()


def is_legally_valid(quality_score, stroke_data, signature_data, signature_hash, threshold=None) -> bool:
    """
    Re-derive legal validity from stored values only: quality at or above the
    threshold, at least one stroke, and a hash that still matches the data.
    """
    threshold = settings.SIGNATURE_MIN_QUALITY if threshold is None else threshold
    if quality_score is None or quality_score < threshold:
        return False
    if not stroke_data:
        return False
    return hmac.compare_digest(calculate_signature_hash(signature_data), signature_hash or '')


def _to_decimal(value):
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def validate_gps(latitude, longitude) -> dict:
    """
    Field errors for a GPS pair; empty when valid. Both absent is valid, bounds
    are inclusive.
    """
    errors = {}
    if latitude is None and longitude is None:
        return errors
    if latitude is None:
        errors['gps_latitude'] = ['Latitude is required when longitude is provided']
    if longitude is None:
        errors['gps_longitude'] = ['Longitude is required when latitude is provided']

    if latitude is not None:
        lat = _to_decimal(latitude)
        if lat is None:
            errors['gps_latitude'] = ['Latitude must be a number']
        elif not Decimal('-90') <= lat <= Decimal('90'):
            errors['gps_latitude'] = ['Latitude must be between -90 and 90']

    if longitude is not None:
        lng = _to_decimal(longitude)
        if lng is None:
            errors['gps_longitude'] = ['Longitude must be a number']
        elif not Decimal('-180') <= lng <= Decimal('180'):
            errors['gps_longitude'] = ['Longitude must be between -180 and 180']

    return errors


def validate_photo(data: dict) -> dict:
    """
    Validate an uploaded photo (base64 in photo_data) for size, image format
    and GPS. The decoded bytes are returned in content so callers do not
    decode twice.
    """
    errors, warnings = [], []
    result = {'valid': False, 'errors': errors, 'warnings': warnings, 'format': None,
              'width': None, 'height': None, 'file_size': 0, 'content': None}

    try:
        content = decode_base64(data.get('photo_data'))
    except ValueError:
        errors.append('Photo data is missing or not valid base64')
        return result

    result['file_size'] = len(content)
    max_size = settings.PHOTO_MAX_SIZE
    if len(content) > max_size:
        errors.append(f'Photo exceeds the maximum size of {max_size // (1024 * 1024)} MB')
    else:
        try:
            with Image.open(io.BytesIO(content)) as image:
                result['format'] = image.format
                result['width'], result['height'] = image.size
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError):
            errors.append('Photo is not a readable image')

        if result['format'] and result['format'] not in settings.PHOTO_ALLOWED_FORMATS:
            errors.append(f"Unsupported photo format {result['format']}, allowed: {', '.join(settings.PHOTO_ALLOWED_FORMATS)}")

    latitude, longitude = data.get('gps_latitude'), data.get('gps_longitude')
    for messages in validate_gps(latitude, longitude).values():
        errors.extend(messages)
    if latitude is None and longitude is None and data.get('photo_type', 'delivery_proof') == 'delivery_proof':
        warnings.append('Delivery proof photo has no GPS location')

    result['content'] = content
    result['valid'] = not errors
    return result

"""
Unit tests for signature, GPS and photo validation
"""
from decimal import Decimal
from unittest.mock import patch
from PIL import Image
from django.test import SimpleTestCase, override_settings

from .testing import zigzag_strokes, make_signature_payload, make_photo_data, encode_image
from .validators import (
    parse_strokes, is_straight_line, calculate_signature_quality, estimate_progress,
    validate_signature, calculate_signature_hash, is_legally_valid, validate_gps, validate_photo
)


class StrokeParsingTest(SimpleTestCase):
    """Test stroke normalisation"""

    def test_accepts_pairs_and_objects(self):
        """Test that [x, y] pairs and {x, y} objects parse to the same points"""
        parsed = parse_strokes([[[1, 2], {'x': 3, 'y': 4}]])
        self.assertEqual(parsed, [[(1.0, 2.0), (3.0, 4.0)]])

    def test_empty_strokes_are_dropped(self):
        """Test that strokes without points are ignored"""
        self.assertEqual(parse_strokes([[], [[0, 0]]]), [[(0.0, 0.0)]])

    def test_rejects_non_numeric_points(self):
        """Test that garbage coordinates raise ValueError"""
        with self.assertRaises(ValueError):
            parse_strokes([[['a', 'b']]])

    def test_rejects_non_list(self):
        """Test that stroke data must be a list"""
        with self.assertRaises(ValueError):
            parse_strokes('not strokes')

    def test_straight_line_detection(self):
        """Test that a ruler line is straight and a zigzag is not"""
        self.assertTrue(is_straight_line([(0, 0), (50, 1), (100, 0)]))
        self.assertFalse(is_straight_line(zigzag_strokes(count=1)[0]))


class SignatureQualityTest(SimpleTestCase):
    """Test the signature quality heuristic"""

    def test_full_signature_scores_one(self):
        """Test that four canvas-wide zigzag strokes reach full marks"""
        self.assertEqual(calculate_signature_quality(zigzag_strokes(), (400, 200)), 1.0)

    def test_no_strokes_scores_zero(self):
        """Test that an empty signature scores 0"""
        self.assertEqual(calculate_signature_quality([], (400, 200)), 0.0)

    def test_straight_lines_are_penalised(self):
        """Test that a signature made of straight lines loses the straight line penalty"""
        lines = [[[20 + i * 18, 20 + s * 50] for i in range(20)] for s in range(4)]
        zigzags = zigzag_strokes()
        self.assertLess(calculate_signature_quality(lines, (400, 200)), calculate_signature_quality(zigzags, (400, 200)))

    def test_score_is_bounded(self):
        """Test that the score stays within 0 and 1"""
        score = calculate_signature_quality([[[0, 0], [1, 1]]], (400, 200))
        self.assertGreaterEqual(score, 0.0)
        self.assertLessEqual(score, 1.0)

    def test_progress_estimate(self):
        """Test the running estimate reported while drawing"""
        progress = estimate_progress(zigzag_strokes(count=2))
        self.assertEqual(progress['stroke_count'], 2)
        self.assertEqual(progress['point_count'], 40)
        self.assertGreater(progress['quality_estimate'], 0)


class SignatureValidationTest(SimpleTestCase):
    """Test validate_signature"""

    def test_valid_signature(self):
        """Test that a well drawn signature is valid"""
        result = validate_signature(make_signature_payload())
        self.assertTrue(result['valid'], result['errors'])
        self.assertEqual(result['quality_score'], 1.0)
        self.assertEqual(result['warnings'], [])

    def test_transparent_signature_image(self):
        """Test that ink on a transparent canvas is counted"""
        result = validate_signature(make_signature_payload(transparent=True))
        self.assertTrue(result['valid'], result['errors'])

    @patch('delivery_service.validators.calculate_signature_quality', return_value=0.70)
    def test_quality_at_threshold_is_accepted(self, mock_quality):
        """Test that a quality of exactly 0.70 passes"""
        result = validate_signature(make_signature_payload())
        self.assertTrue(result['valid'])
        self.assertEqual(result['quality_score'], 0.70)
        self.assertIn('Signature quality is acceptable but low', result['warnings'])

    @patch('delivery_service.validators.calculate_signature_quality', return_value=0.699)
    def test_quality_below_threshold_is_rejected(self, mock_quality):
        """Test that a quality of 0.699 fails"""
        result = validate_signature(make_signature_payload())
        self.assertFalse(result['valid'])
        self.assertTrue(any('below the required' in error for error in result['errors']))

    def test_short_data_is_rejected(self):
        """Test that data under 100 characters is rejected"""
        result = validate_signature({'signature_data': 'data:image/png;base64,AAAA', 'strokes': zigzag_strokes()})
        self.assertFalse(result['valid'])
        self.assertIn('Signature data is too short', result['errors'])

    def test_undecodable_image_is_rejected(self):
        """Test that long data that is not an image is rejected"""
        result = validate_signature({'signature_data': 'data:image/png;base64,' + 'QUJD' * 40, 'strokes': zigzag_strokes()})
        self.assertFalse(result['valid'])
        self.assertIn('Invalid signature data format', result['errors'])

    def test_no_strokes_is_rejected(self):
        """Test that a signature without strokes is rejected"""
        result = validate_signature(make_signature_payload(strokes=[]))
        self.assertFalse(result['valid'])
        self.assertIn('Signature has no strokes', result['errors'])

    def test_too_few_points_is_rejected(self):
        """Test that fewer than 10 points is rejected"""
        result = validate_signature(make_signature_payload(strokes=[[[20, 20], [200, 180], [380, 20]]]))
        self.assertFalse(result['valid'])
        self.assertIn('Signature is too short', result['errors'])


class LegalValidityTest(SimpleTestCase):
    """Test is_legally_valid on stored values"""

    def setUp(self):
        self.data = make_signature_payload()['signature_data']
        self.hash = calculate_signature_hash(self.data)
        self.strokes = zigzag_strokes()

    def test_valid(self):
        """Test that matching hash, strokes and quality are legally valid"""
        self.assertTrue(is_legally_valid(0.9, self.strokes, self.data, self.hash))

    def test_threshold_boundary(self):
        """Test the 0.70 boundary"""
        self.assertTrue(is_legally_valid(0.70, self.strokes, self.data, self.hash))
        self.assertFalse(is_legally_valid(0.699, self.strokes, self.data, self.hash))

    def test_tampered_data(self):
        """Test that data no longer matching its hash is invalid"""
        self.assertFalse(is_legally_valid(0.9, self.strokes, self.data + 'x', self.hash))

    def test_no_strokes(self):
        """Test that a signature without stroke data is invalid"""
        self.assertFalse(is_legally_valid(0.9, [], self.data, self.hash))

    def test_hash_is_sha256_of_data(self):
        """Test the signature hash format"""
        self.assertEqual(len(self.hash), 64)
        self.assertEqual(self.hash, calculate_signature_hash(self.data))


class GpsValidationTest(SimpleTestCase):
    """Test GPS bounds"""

    def test_bounds_are_inclusive(self):
        """Test that the extreme coordinates are valid"""
        self.assertEqual(validate_gps(90, 180), {})
        self.assertEqual(validate_gps(-90, -180), {})
        self.assertEqual(validate_gps(Decimal('0'), Decimal('0')), {})

    def test_latitude_out_of_range(self):
        """Test that 90.0001 is rejected"""
        errors = validate_gps(90.0001, 0)
        self.assertIn('gps_latitude', errors)
        self.assertNotIn('gps_longitude', errors)

    def test_longitude_out_of_range(self):
        """Test that -180.0001 is rejected"""
        self.assertIn('gps_longitude', validate_gps(0, '-180.0001'))

    def test_both_absent_is_valid(self):
        """Test that a capture without GPS is valid"""
        self.assertEqual(validate_gps(None, None), {})

    def test_lone_coordinate_is_rejected(self):
        """Test that one coordinate without the other is rejected"""
        self.assertIn('gps_longitude', validate_gps(6.5, None))
        self.assertIn('gps_latitude', validate_gps(None, 3.3))

    def test_non_numeric(self):
        """Test that text coordinates are rejected"""
        self.assertIn('gps_latitude', validate_gps('north', 3.3))


class PhotoValidationTest(SimpleTestCase):
    """Test validate_photo"""

    def test_valid_jpeg(self):
        """Test that a JPEG with GPS is valid"""
        result = validate_photo({'photo_data': make_photo_data(), 'gps_latitude': 6.5, 'gps_longitude': 3.3})
        self.assertTrue(result['valid'], result['errors'])
        self.assertEqual(result['format'], 'JPEG')
        self.assertEqual((result['width'], result['height']), (640, 480))
        self.assertEqual(result['file_size'], len(result['content']))

    def test_missing_gps_warns(self):
        """Test that a proof photo without GPS is valid with a warning"""
        result = validate_photo({'photo_data': make_photo_data(format='PNG')})
        self.assertTrue(result['valid'])
        self.assertEqual(result['warnings'], ['Delivery proof photo has no GPS location'])

    def test_unsupported_format(self):
        """Test that a BMP is rejected"""
        result = validate_photo({'photo_data': encode_image(Image.new('RGB', (10, 10)), 'BMP')})
        self.assertFalse(result['valid'])
        self.assertTrue(any('Unsupported photo format BMP' in error for error in result['errors']))

    @override_settings(PHOTO_MAX_SIZE=100)
    def test_oversized(self):
        """Test that a photo above the size limit is rejected"""
        result = validate_photo({'photo_data': make_photo_data(size=(320, 240))})
        self.assertFalse(result['valid'])
        self.assertTrue(any('maximum size' in error for error in result['errors']))

    def test_not_base64(self):
        """Test that garbage is rejected without raising"""
        result = validate_photo({'photo_data': '***'})
        self.assertFalse(result['valid'])
        self.assertIsNone(result['content'])

    def test_not_an_image(self):
        """Test that valid base64 that is not an image is rejected"""
        result = validate_photo({'photo_data': 'aGVsbG8gd29ybGQ='})
        self.assertFalse(result['valid'])
        self.assertIn('Photo is not a readable image', result['errors'])

    def test_photo_gps_out_of_range(self):
        """Test that photo coordinates are checked"""
        result = validate_photo({'photo_data': make_photo_data(), 'gps_latitude': 91, 'gps_longitude': 0})
        self.assertFalse(result['valid'])

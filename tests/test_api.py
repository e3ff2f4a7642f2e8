from __future__ import annotations

import unittest
import uuid

from fastapi.testclient import TestClient

from fleetops.config import Settings
from fleetops.db import create_schema, make_engine, make_session_factory
from fleetops.main import create_app
from fleetops.models import User, UserRole


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine('sqlite://')
        create_schema(self.engine)
        session_factory = make_session_factory(self.engine)
        with session_factory() as db:
            self.accountant = self._user(db, UserRole.ACCOUNTANT)
            self.supervisor = self._user(db, UserRole.FIELD_SUPERVISOR)
            self.retired = self._user(db, UserRole.ACCOUNTANT, active=False)
            db.commit()

        app = create_app(self.engine, config=Settings(database_url='sqlite://', log_level='WARNING'))
        self.client_cm = TestClient(app)
        self.client = self.client_cm.__enter__()

    def tearDown(self) -> None:
        self.client_cm.__exit__(None, None, None)
        self.engine.dispose()

    @staticmethod
    def _user(db, role: UserRole, *, active: bool = True) -> str:
        user = User(full_name=f'{role.value.title()} user', role=role, active=active)
        db.add(user)
        db.flush()
        return str(user.id)

    def _as(self, actor_id: str) -> dict:
        return {'X-Actor-Id': actor_id}

    def _create_advance(self, amount='500') -> dict:
        response = self.client.post(
            '/cash/advances',
            json={'field_supervisor_id': self.supervisor, 'amount': amount},
            headers=self._as(self.accountant),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()['cash_advance']

    def test_health_needs_no_identity(self) -> None:
        response = self.client.get('/health')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})
        self.assertEqual(response.headers['Cache-Control'], 'no-store')
        self.assertEqual(response.headers['X-Robots-Tag'], 'noindex, nofollow, noarchive')

    def test_identity_header_checks(self) -> None:
        missing = self.client.get('/cash/advances')
        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.json()['kind'], 'UNAUTHENTICATED')

        malformed = self.client.get('/cash/advances', headers=self._as('not-a-uuid'))
        self.assertEqual(malformed.status_code, 400)
        self.assertEqual(malformed.json()['kind'], 'VALIDATION')

        unknown = self.client.get('/cash/advances', headers=self._as(str(uuid.uuid4())))
        self.assertEqual(unknown.status_code, 401)

        inactive = self.client.get('/cash/advances', headers=self._as(self.retired))
        self.assertEqual(inactive.status_code, 403)
        self.assertEqual(inactive.headers['X-Content-Type-Options'], 'nosniff')

    def test_create_and_list_advances(self) -> None:
        advance = self._create_advance()

        self.assertEqual(advance['status'], 'OPEN')
        self.assertEqual(advance['field_supervisor_id'], self.supervisor)

        listing = self.client.get('/cash/advances', headers=self._as(self.supervisor)).json()
        self.assertEqual(listing['total'], 1)
        self.assertEqual(listing['items'][0]['id'], advance['id'])

    def test_service_errors_map_to_status_codes(self) -> None:
        advance = self._create_advance()

        forbidden = self.client.post(
            '/cash/advances',
            json={'field_supervisor_id': self.supervisor, 'amount': '10'},
            headers=self._as(self.supervisor),
        )
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(forbidden.json()['kind'], 'NOT_AUTHORIZED')

        wrong_state = self.client.post(
            f'/cash/advances/{advance["id"]}/close',
            json={'settlement_type': 'RETURN', 'amount': '500'},
            headers=self._as(self.accountant),
        )
        self.assertEqual(wrong_state.status_code, 409)
        body = wrong_state.json()
        self.assertEqual(body['kind'], 'WRONG_STATE')
        self.assertEqual(body['current'], 'OPEN')
        self.assertEqual(body['required'], ['IN_REVIEW'])

        missing = self.client.get(f'/cash/advances/{uuid.uuid4()}', headers=self._as(self.accountant))
        self.assertEqual(missing.status_code, 404)

    def test_review_and_close_over_http(self) -> None:
        advance = self._create_advance('200')

        review = self.client.post(
            f'/cash/advances/{advance["id"]}/submit-review', headers=self._as(self.accountant)
        )
        self.assertEqual(review.status_code, 200)
        self.assertEqual(review.json()['cash_advance']['status'], 'IN_REVIEW')

        closed = self.client.post(
            f'/cash/advances/{advance["id"]}/close',
            json={'settlement_type': 'return', 'amount': '200'},
            headers=self._as(self.accountant),
        )
        self.assertEqual(closed.status_code, 200, closed.text)
        self.assertEqual(closed.json()['cash_advance']['status'], 'CLOSED')
        self.assertEqual(closed.json()['totals']['remaining'], '200.00')

    def test_bad_path_id_and_body_are_validation_errors(self) -> None:
        bad_id = self.client.get('/cash/advances/123', headers=self._as(self.accountant))
        self.assertEqual(bad_id.status_code, 400)
        self.assertEqual(bad_id.json()['kind'], 'VALIDATION')

        bad_body = self.client.post('/cash/advances', json={'amount': '10'}, headers=self._as(self.accountant))
        self.assertEqual(bad_body.status_code, 400)
        self.assertEqual(bad_body.json()['kind'], 'VALIDATION')
        self.assertTrue(bad_body.json()['errors'])

    def test_reports_require_privilege(self) -> None:
        response = self.client.get('/cash/reports/supervisor-deficit', headers=self._as(self.supervisor))
        self.assertEqual(response.status_code, 403)

        report = self.client.get('/cash/reports/supervisor-deficit', headers=self._as(self.accountant))
        self.assertEqual(report.status_code, 200)
        self.assertEqual(report.json()['total'], 0)

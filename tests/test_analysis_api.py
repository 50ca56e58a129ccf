"""
Test the analysis HTTP API and its AG-UI event streams
"""
import json
import tempfile
import unittest
import sys
import os
from unittest.mock import patch
from fastapi import FastAPI
from fastapi.testclient import TestClient

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import api.analysis as analysis_api
from core.models import Prompt, ResultType
from test_analysis_service import ANIMAL_TREE, make_png, make_service


def sse_events(text):
    return [json.loads(line[len('data: '):]) for line in text.splitlines() if line.startswith('data: ')]


class TestAnalysisAPI(unittest.TestCase):
    """Router endpoints backed by a scripted model"""

    def setUp(self):
        self.replies = {
            'Any animals?': 'Yes',
            'How many animals?': '2',
            'Describe.': ['A small ', 'garden.'],
            'What flowers?': ['Ros', 'es.'],
        }
        self.service, self.provider = make_service(ANIMAL_TREE + [Prompt(id='t', text='Describe.')], self.replies)

        patcher = patch.object(analysis_api, '_analysis_service', self.service)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.upload_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.upload_dir.cleanup)
        dir_patcher = patch.object(analysis_api, 'UPLOAD_DIR', self.upload_dir.name)
        dir_patcher.start()
        self.addCleanup(dir_patcher.stop)

        app = FastAPI()
        app.include_router(analysis_api.router, prefix="/api")
        self.client = TestClient(app)

    def test_prompt_crud(self):
        prompts = self.client.get("/api/analysis/prompts").json()['prompts']
        self.assertEqual([p['id'] for p in prompts], ['q', 'count', 'why', 't'])

        created = self.client.post("/api/analysis/prompts", json={"parent_id": "q", "text": "Which?"}).json()
        self.assertTrue(created['ok'])
        self.assertEqual(created['prompt']['condition'], 'yes')

        updated = self.client.patch(f"/api/analysis/prompts/{created['prompt']['id']}",
                                    json={"changes": {"condition": "no"}}).json()
        self.assertEqual(updated['prompt']['condition'], 'no')

        bad = self.client.patch("/api/analysis/prompts/t", json={"changes": {"parent_id": "nowhere"}})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(self.client.post("/api/analysis/prompts", json={"parent_id": "zzz"}).status_code, 404)

    def test_delete_needs_confirmation_for_children(self):
        response = self.client.delete("/api/analysis/prompts/q")
        self.assertEqual(response.status_code, 409)

        response = self.client.delete("/api/analysis/prompts/q", params={"confirm": "true"})
        self.assertEqual(set(response.json()['deleted']), {'q', 'count', 'why'})
        self.assertEqual(self.client.delete("/api/analysis/prompts/missing").status_code, 404)

    def test_move_and_export_import(self):
        self.assertTrue(self.client.post("/api/analysis/prompts/t/move", json={"target_id": "q"}).json()['ok'])
        exported = self.client.get("/api/analysis/prompts/export").json()
        self.assertEqual([p['id'] for p in exported], ['t', 'q', 'count', 'why'])

        imported = self.client.post("/api/analysis/prompts/import", json=exported[:1]).json()
        self.assertEqual(imported['count'], 1)
        self.assertEqual(set(imported['removed']), {'q', 'count', 'why'})

        bad = self.client.post("/api/analysis/prompts/import", json=[{"id": "x"}])
        self.assertEqual(bad.status_code, 400)

        bad_range = [{"id": "s", "text": "Rate.", "type": "score", "scoreRange": [1, 5, 9]}]
        self.assertEqual(self.client.post("/api/analysis/prompts/import", json=bad_range).status_code, 400)
        bad_patch = self.client.patch("/api/analysis/prompts/t", json={"changes": {"region_coords": [1, 2, 3]}})
        self.assertEqual(bad_patch.status_code, 400)
        bad_create = self.client.post("/api/analysis/prompts", json={"text": "Rate.", "type": "score",
                                                                   "fields": {"score_range": "wide"}})
        self.assertEqual(bad_create.status_code, 400)

    def test_upload_and_run_pending(self):
        upload = self.client.post(
            "/api/analysis/images", files={"file": ("photo.png", make_png(), "image/png")}
        ).json()
        self.assertTrue(upload['ok'])
        image_id = upload['image_id']
        self.assertTrue(os.path.exists(os.path.join(self.upload_dir.name, f"{image_id}.png")))

        response = self.client.post(f"/api/analysis/images/{image_id}/run")
        self.assertEqual(response.status_code, 200)
        events = sse_events(response.text)
        self.assertEqual(events[0]['type'], 'RUN_STARTED')
        self.assertEqual(events[-1]['type'], 'RUN_FINISHED')

        snapshots = [e['snapshot'] for e in events if e['type'] == 'STATE_SNAPSHOT']
        count_updates = [s for s in snapshots if s.get('prompt_id') == 'count']
        self.assertEqual(count_updates[-1]['history'][-1]['data'], 2.0)

        results = self.client.get(f"/api/analysis/images/{image_id}/results").json()['results']
        self.assertEqual(results['t'][0]['data'], 'A small garden.')
        self.assertNotIn('why', results)

        images = self.client.get("/api/analysis/images").json()['images']
        self.assertIn({'image_id': image_id, 'status': 'idle'}, images)

    def test_unsupported_upload(self):
        upload = self.client.post("/api/analysis/images", files={"file": ("notes.txt", b"hi", "text/plain")})
        self.assertFalse(upload.json()['ok'])

    def test_run_one_and_follow_up_stream(self):
        response = self.client.post("/api/analysis/images/img1/prompts/t/run")
        events = sse_events(response.text)
        outcome = [e['snapshot'] for e in events if e['type'] == 'STATE_SNAPSHOT'][-1]['outcome']
        self.assertEqual(outcome['status'], 'success')

        response = self.client.post("/api/analysis/images/img1/prompts/t/follow-up",
                                    json={"question": "What flowers?"})
        events = sse_events(response.text)
        types = [e['type'] for e in events]
        self.assertIn('TEXT_MESSAGE_START', types)
        self.assertIn('TEXT_MESSAGE_END', types)
        deltas = ''.join(e['delta'] for e in events if e['type'] == 'TEXT_MESSAGE_CONTENT')
        self.assertEqual(deltas, 'Roses.')

        result = self.service.results.latest('img1', 't')
        self.assertEqual(result.conversation_history[-1].answer, 'Roses.')

    def test_follow_up_validation(self):
        response = self.client.post("/api/analysis/images/img1/prompts/q/follow-up", json={"question": "Sure?"})
        self.assertEqual(response.status_code, 400)
        response = self.client.post("/api/analysis/images/img1/prompts/t/follow-up", json={"question": "Sure?"})
        self.assertEqual(response.status_code, 400)
        response = self.client.post("/api/analysis/images/nope/prompts/t/run")
        self.assertEqual(response.status_code, 404)

    def test_run_all_and_remove_image(self):
        response = self.client.post("/api/analysis/run", json={})
        events = sse_events(response.text)
        outcome = [e['snapshot'] for e in events if e['type'] == 'STATE_SNAPSHOT'][-1]['outcome']
        self.assertEqual(outcome, {'img1': 'success'})

        images = self.client.get("/api/analysis/images").json()['images']
        self.assertEqual(images, [{'image_id': 'img1', 'status': 'success'}])

        self.assertTrue(self.client.delete("/api/analysis/images/img1").json()['ok'])
        self.assertEqual(self.client.get("/api/analysis/images/img1/results").status_code, 404)

    def test_cancel_without_run(self):
        self.assertFalse(self.client.post("/api/analysis/images/img1/prompts/t/cancel").json()['ok'])

    def test_generate_prompts(self):
        self.replies['sunsets'] = json.dumps([{'text': 'Is the sun visible?', 'type': 'yes/no'}])
        response = self.client.post("/api/analysis/prompts/generate", json={
            "goal": "sunsets", "num_prompts": 1, "allowed_types": ["yes/no"]
        }).json()
        self.assertTrue(response['ok'])
        self.assertEqual(response['prompts'][0]['type'], ResultType.YES_NO.value)
        self.assertEqual(len(self.service.prompt_tree), 5)

        self.replies['sunsets'] = 'no json here'
        response = self.client.post("/api/analysis/prompts/generate", json={"goal": "sunsets"}).json()
        self.assertFalse(response['ok'])
        self.assertEqual(response['error_code'], 'ParseError')


if __name__ == '__main__':
    unittest.main()

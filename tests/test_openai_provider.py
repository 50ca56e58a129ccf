"""
Test the chat-completions provider with the HTTP layer patched out
"""
import json
import math
import asyncio
import unittest
import sys
import os
from unittest.mock import MagicMock, patch
import requests

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.models import BoundingBox, ConversationTurn, Prompt, ResultType
from genai.models import ModelSettings, ParseError, TransportError, TruncationError
from genai.models.providers import create_model_provider
from genai.models.providers.openai_compat import ChatCompletionsProvider

IMAGE_URI = "data:image/png;base64,AAAA"


def json_response(content, finish_reason='stop', status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.text = 'error body'
    response.json.return_value = {
        'choices': [{'message': {'content': content}, 'finish_reason': finish_reason}]
    }
    return response


def sse_response(deltas, finish_reason='stop'):
    lines = []
    for delta in deltas:
        lines.append('data: ' + json.dumps({'choices': [{'delta': {'content': delta}, 'finish_reason': None}]}))
        lines.append('')
    lines.append('data: ' + json.dumps({'choices': [{'delta': {}, 'finish_reason': finish_reason}]}))
    lines.append('data: [DONE]')

    response = MagicMock()
    response.status_code = 200
    response.iter_lines.return_value = iter(lines)
    return response


async def collect(stream):
    return [delta async for delta in stream]


class TestChatCompletionsProvider(unittest.TestCase):
    """Request construction, transport and decoding"""

    def setUp(self):
        self.settings = ModelSettings(
            api_endpoint='http://model.local/v1/chat/completions',
            model_name='vision-test',
            api_key='secret',
            temperature=0.2
        )
        self.provider = create_model_provider(self.settings)

    def test_factory(self):
        self.assertIsInstance(self.provider, ChatCompletionsProvider)
        with self.assertRaises(ValueError):
            create_model_provider(self.settings, 'bedrock')
        with self.assertRaises(ValueError):
            ChatCompletionsProvider(ModelSettings(api_endpoint='', model_name='m'))

    def test_build_request(self):
        text_prompt = Prompt(id='t', text='Describe.')
        payload = self.provider.build_request(text_prompt, IMAGE_URI)
        self.assertTrue(payload['stream'])
        self.assertEqual(payload['model'], 'vision-test')
        self.assertEqual(payload['temperature'], 0.2)
        self.assertNotIn('max_tokens', payload)
        content = payload['messages'][0]['content']
        self.assertEqual(content[0], {'type': 'text', 'text': 'Describe.'})
        self.assertEqual(content[1]['image_url']['url'], IMAGE_URI)

        number_prompt = Prompt(id='n', text='How many?', result_type=ResultType.NUMBER)
        self.assertFalse(self.provider.build_request(number_prompt, IMAGE_URI)['stream'])

    def test_follow_up_replays_conversation(self):
        turns = [ConversationTurn(question='Describe.', answer='A dog.'),
                 ConversationTurn(question='Color?', answer='Brown.')]
        messages = ChatCompletionsProvider.build_messages('Describe.', IMAGE_URI, turns, 'Breed?')
        self.assertEqual([m['role'] for m in messages], ['user', 'assistant', 'user', 'assistant', 'user'])
        self.assertEqual(messages[1]['content'], 'A dog.')
        self.assertEqual(messages[2]['content'], 'Color?')
        self.assertEqual(messages[-1]['content'], 'Breed?')

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_typed_generation_strips_thinking(self, mock_post):
        mock_post.return_value = json_response('<think>count them</think> There are 3.')
        prompt = Prompt(id='n', text='How many?', result_type=ResultType.NUMBER)
        payload = self.provider.build_request(prompt, IMAGE_URI)

        data, raw = asyncio.run(self.provider.generate_typed(payload, prompt.result_type))
        self.assertEqual(data, 3.0)
        self.assertIn('choices', raw)

        _, kwargs = mock_post.call_args
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer secret')
        self.assertEqual(json.loads(kwargs['data'])['stream'], False)

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_non_success_status(self, mock_post):
        mock_post.return_value = json_response('', status_code=500)
        with self.assertRaises(TransportError) as ctx:
            asyncio.run(self.provider.generate_content({'messages': []}))
        self.assertIn('500', str(ctx.exception))

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_connection_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError('refused')
        with self.assertRaises(TransportError):
            asyncio.run(self.provider.generate_content({'messages': []}))

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_length_stop_is_truncation(self, mock_post):
        mock_post.return_value = json_response('{"a": ', finish_reason='length')
        with self.assertRaises(TruncationError):
            asyncio.run(self.provider.generate_typed({'messages': []}, ResultType.JSON))

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_stream_decodes_thinking(self, mock_post):
        response = sse_response(['<think>', 'reasoning', '</think>', 'Hello', ', world'])
        mock_post.return_value = response

        deltas = asyncio.run(collect(self.provider.generate_stream({'messages': [], 'stream': True})))
        self.assertEqual(''.join(deltas), 'Hello, world')
        response.close.assert_called_once()
        self.assertTrue(mock_post.call_args.kwargs['stream'])

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_stream_truncation(self, mock_post):
        mock_post.return_value = sse_response(['partial answer'], finish_reason='length')

        async def consume():
            return await collect(self.provider.generate_stream({'messages': []}))

        with self.assertRaises(TruncationError):
            asyncio.run(consume())

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_bbox_child_failure_is_captured(self, mock_post):
        mock_post.side_effect = requests.Timeout('slow')
        bbox = BoundingBox(box=(1, 2, 3, 4), label='cat')
        prompt = Prompt(id='c', text='Age?', result_type=ResultType.NUMBER, parent_id='p')

        result = asyncio.run(self.provider.analyze_bbox_child(prompt, bbox, IMAGE_URI, index=2))
        self.assertEqual(result.parent_box, bbox)
        self.assertEqual(result.index, 2)
        self.assertTrue(result.result_data.startswith('Error: '))

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_bbox_child_number(self, mock_post):
        mock_post.return_value = json_response('no idea')
        bbox = BoundingBox(box=(1, 2, 3, 4), label='cat')
        prompt = Prompt(id='c', text='Age?', result_type=ResultType.NUMBER, parent_id='p')

        result = asyncio.run(self.provider.analyze_bbox_child(prompt, bbox, IMAGE_URI))
        self.assertTrue(math.isnan(result.result_data))

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_generate_prompts(self, mock_post):
        items = [{'text': 'Is it sunny?', 'type': 'yes/no'}, {'text': 'Describe the sky.', 'type': 'text'}]
        mock_post.return_value = json_response('```json\n' + json.dumps(items) + '\n```')

        parsed = asyncio.run(self.provider.generate_prompts('weather', 2, [ResultType.YES_NO, ResultType.TEXT]))
        self.assertEqual(parsed, items)
        body = json.loads(mock_post.call_args.kwargs['data'])
        self.assertEqual(body['max_tokens'], 4096)
        self.assertEqual(len(body['messages'][0]['content']), 1)

    @patch('genai.models.providers.openai_compat.requests.post')
    def test_generate_prompts_rejects_disallowed_type(self, mock_post):
        mock_post.return_value = json_response(json.dumps([{'text': 'Where?', 'type': 'bbox'}]))
        with self.assertRaises(ParseError):
            asyncio.run(self.provider.generate_prompts('find', 1, [ResultType.TEXT]))


if __name__ == '__main__':
    unittest.main()

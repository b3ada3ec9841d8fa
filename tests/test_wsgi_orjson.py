"""Tests for WSGI functionality using orjson json serializer."""

from http import HTTPStatus

import orjson

from cleanrouter import Dispatcher, FactoryRegistry, NotFoundPolicy, RouterConfig, RouteTable, WsgiApp


def test_response_conversion_dict_orjson():
    conf = RouterConfig()
    conf.json_serializer = orjson.dumps
    env = {'REQUEST_METHOD': 'GET'}

    json_response = (HTTPStatus.OK, (b'{"B":"blaah"}',), {'Content-Type': 'application/json', 'Content-Length': '13'})
    assert conf.result_handler(conf, env, {'B': 'blaah'}) == json_response


def test_not_found_orjson():
    conf = RouterConfig(not_found_policy=NotFoundPolicy.ERROR, json_serializer=orjson.dumps)
    app = WsgiApp(Dispatcher(RouteTable(), FactoryRegistry(), config=conf))
    response = {}

    def start_response(status, headers):
        response['status'] = status
        response['headers'] = dict(headers)

    body = b''.join(app({'REQUEST_METHOD': 'GET', 'PATH_INFO': '/missing/page'}, start_response))
    assert response['status'] == '404 Not Found'
    assert response['headers']['Content-Length'] == str(len(body))
    assert orjson.loads(body) == {'status': 404, 'path': '/missing/page'}

from aiohttp import web

ITEMS = {
    "7": {"id": "7", "title": "Seven", "reviewers": [
        {"name": "Ann", "role": "editor"},
        {"name": "Bob", "role": "author"},
    ]},
    "9": {"id": "9", "title": "Nine", "reviewers": [
        {"name": "Cid", "role": "author"},
    ]},
}

def _record(request: web.Request, body: str):
    path = request.path
    hits = request.app['hits']
    hits[path] = hits.get(path, 0) + 1
    request.app['requests'].append({
        'path': path,
        'method': request.method,
        'query': dict(request.query),
        'headers': dict(request.headers),
        'body': body,
    })

async def list_items(request: web.Request) -> web.Response:
    _record(request, await request.text())
    return web.json_response({'items': [{'id': item_id} for item_id in ITEMS]})

async def get_item(request: web.Request) -> web.Response:
    _record(request, await request.text())
    item = ITEMS.get(request.match_info['item_id'])
    if item is None:
        return web.json_response({'error': 'not found'}, status=404)
    return web.json_response(item)

async def echo(request: web.Request) -> web.Response:
    body = await request.text()
    _record(request, body)
    return web.Response(text=body, content_type=request.content_type)

async def broken(request: web.Request) -> web.Response:
    _record(request, await request.text())
    return web.Response(text='{"unterminated": ', content_type='application/json')

async def xml(request: web.Request) -> web.Response:
    _record(request, await request.text())
    return web.Response(text='<item><id>7</id></item>', content_type='application/xml')

async def create_mock_server():
    app = web.Application()
    app['hits'] = {}
    app['requests'] = []
    app.router.add_get('/items', list_items)
    app.router.add_get('/items/{item_id}', get_item)
    app.router.add_post('/echo', echo)
    app.router.add_put('/echo', echo)
    app.router.add_get('/broken', broken)
    app.router.add_get('/xml', xml)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '127.0.0.1', 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]
    base_url = f'http://127.0.0.1:{port}'
    return runner, base_url, app['hits'], app['requests']

async def shutdown_mock_server(runner):
    await runner.cleanup()

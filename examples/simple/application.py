"""Examples for cleanrouter."""

from http import HTTPStatus
from wsgiref.simple_server import make_server

from cleanrouter import Dispatcher, FactoryRegistry, RouterConfig, RouteTable, WsgiApp


routes = RouteTable()
handlers = FactoryRegistry()
dependencies = FactoryRegistry()

# in-memory storage shared by all repositories
_USERS = {'42': {'id': '42', 'name': 'Arthur'}}


@dependencies.register('Users')
class UserRepository:
    def __init__(self, storage: dict) -> None:
        self.storage = storage

    def get(self, user_id: str):
        return self.storage.get(user_id)


# "Name:action" reference, handler is constructed with route args and action gets the request context
@handlers.register('User')
class UserController:
    def __init__(self, args) -> None:
        self.args = args

    def show(self, users: UserRepository, bindings: dict, body: bytes):
        user = users.get(bindings['id'])
        if user is None:
            return HTTPStatus.NOT_FOUND, {'id': bindings['id']}
        # dict is converted to json
        return user


# "Name" reference, factory gets route args, path variables and body
@handlers.register('Blog')
def blog(args, bindings: dict, body: bytes) -> str:
    # /blog/2024__hello is bound as {'slug': '2024/hello'}
    return f'{args["title"]}: {bindings["slug"]}'


routes.register('GET', '/user/{id}', 'User:show', dependencies=('Users',), device='api')
routes.register('GET', '/blog/{slug}', 'Blog', {'title': 'Blog'})
# always served by mobile application, forwarded as /m/app/...
routes.register('GET', '/app/{page}', 'Blog', {'title': 'App'}, device='mobile')

config = RouterConfig(default_location='/blog/index', dependency_context=_USERS)
app = WsgiApp(Dispatcher(routes, handlers, dependencies, config))
port = 8000

with make_server('', port, app) as httpd:
    print(f'Serving HTTP on port {port}...')

    # Respond to requests until process is killed
    httpd.serve_forever()

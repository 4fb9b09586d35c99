from docker.errors import NotFound

from nsc.docker_ops import ServiceInfo, SwarmSource, service_info


def _attrs(id, name, labels=None):
    return {"ID": id, "Spec": {"Name": name, "Labels": labels or {}}}


class FakeService:
    def __init__(self, attrs):
        self.attrs = attrs


class FakeServices:
    def __init__(self, attrs):
        self.by_id = {a["ID"]: a for a in attrs}

    def list(self):
        return [FakeService(a) for a in self.by_id.values()]

    def get(self, id):
        if id not in self.by_id:
            raise NotFound(f"service {id} not found")
        return FakeService(self.by_id[id])


class FakeDockerClient:
    def __init__(self, attrs):
        self.services = FakeServices(attrs)


class RecordingController:
    def __init__(self, services=()):
        self.services = {id: object() for id in services}
        self.calls = []

    def add_service(self, id, name, hostname=None, options=None):
        self.calls.append(("add", id, name, hostname, options))

    def remove_service(self, id):
        self.calls.append(("remove", id))


def _event(action, id):
    return {"Type": "service", "Action": action, "Actor": {"ID": id, "Attributes": {}}}


def test_service_info_maps_labels_and_task_hostname():
    info = service_info(_attrs("abc", "web", {"nginx.server-name": "a.example", "nginx.cache": "false"}))
    assert info == ServiceInfo(
        id="abc",
        name="web",
        hostname="tasks.web",
        options={"http_server_name": "a.example", "http_cache_enabled": "false"},
    )


def test_get_services_lists_swarm():
    source = SwarmSource(client=FakeDockerClient([_attrs("a", "one"), _attrs("b", "two")]))
    assert [s.name for s in source.get_services()] == ["one", "two"]
    assert source.get_service("missing") is None


def test_create_and_update_events_add_the_service():
    source = SwarmSource(client=FakeDockerClient([_attrs("a", "web", {"nginx.stream-port": "5432"})]))
    ctl = RecordingController()

    source.dispatch(ctl, _event("create", "a"))
    source.dispatch(ctl, _event("update", "a"))

    assert ctl.calls == [("add", "a", "web", "tasks.web", {"stream_port": "5432"})] * 2


def test_remove_event_and_vanished_service_remove():
    source = SwarmSource(client=FakeDockerClient([]))
    ctl = RecordingController()

    source.dispatch(ctl, _event("remove", "a"))
    source.dispatch(ctl, _event("update", "b"))
    source.dispatch(ctl, {"Action": "update", "Actor": {}})

    assert ctl.calls == [("remove", "a"), ("remove", "b")]


def test_resync_removes_missing_and_adds_current():
    source = SwarmSource(client=FakeDockerClient([_attrs("b", "web")]))
    ctl = RecordingController(services=["a", "b"])

    source.resync(ctl)

    assert ctl.calls == [("remove", "a"), ("add", "b", "web", "tasks.web", {})]

"""
Collaborator factories for startup tests.

Referenced from test app.yaml files as 'tests.helpers.factories:<name>';
each takes the parsed app config like a deployment factory would.
"""

from tests.helpers.fakes import FakeAdapter, FakeChain, FakeDataSource, FakeSigner


def build_data_source(app_config):
    return FakeDataSource()


def build_signer(app_config):
    return FakeSigner()


def build_chain(app_config):
    return FakeChain()


def build_unhealthy_chain(app_config):
    return FakeChain(healthy=False)


def build_exploding_chain(app_config):
    chain = FakeChain()

    def is_healthy():
        raise ConnectionError("connection refused")

    chain.is_healthy = is_healthy
    return chain


def build_marinade(app_config):
    return FakeAdapter("marinade", ["stake", "unstake"])


def build_broken_signer(app_config):
    raise FileNotFoundError("keypair file missing")

"""Tests for the namespace endpoints."""

from nomad_client.exceptions import NomadConnectionError
from nomad_client.models import Namespace
from nomad_client.namespaces import NamespacesAPI


class TestNamespaces:
    async def test_list(self, make_transport):
        transport = make_transport(
            {("GET", "/v1/namespaces"): [{"Name": "default"}, {"Name": "prod"}]}
        )

        page = await NamespacesAPI(transport).list()

        assert [ns.name for ns in page.items] == ["default", "prod"]
        assert page.next_token is None

    async def test_create_from_model(self, make_transport):
        transport = make_transport({("POST", "/v1/namespaces"): {"Index": 12}})

        response = await NamespacesAPI(transport).create(
            Namespace(name="prod", description="Production", meta={"team": "ops"})
        )

        assert response.index == 12
        assert transport.request.call_args.kwargs["json"] == {
            "Name": "prod",
            "Description": "Production",
            "Meta": {"team": "ops"},
        }

    async def test_update_posts_to_namespace(self, make_transport):
        transport = make_transport({("POST", "/v1/namespace/prod"): {}})

        await NamespacesAPI(transport).update({"Name": "prod", "Description": "x"})

        assert transport.request.call_args.args == ("POST", "/v1/namespace/prod")

    async def test_delete(self, make_transport):
        transport = make_transport({("DELETE", "/v1/namespace/prod"): {}})

        await NamespacesAPI(transport).delete("prod")

        transport.request.assert_awaited_once()

    async def test_exists(self, make_transport):
        transport = make_transport({("GET", "/v1/namespace/prod"): {"Name": "prod"}})
        api = NamespacesAPI(transport)

        assert await api.exists("prod") is True
        assert await api.exists("staging") is False

    async def test_exists_on_request_failure(self, make_transport):
        transport = make_transport(
            {("GET", "/v1/namespace/prod"): NomadConnectionError("refused")}
        )
        assert await NamespacesAPI(transport).exists("prod") is False


class TestCreateIfNotExists:
    async def test_skips_existing(self, make_transport):
        transport = make_transport({("GET", "/v1/namespace/prod"): {"Name": "prod"}})

        result = await NamespacesAPI(transport).create_if_not_exists({"Name": "prod"})

        assert result is None
        assert transport.request.await_count == 1

    async def test_creates_missing(self, make_transport):
        transport = make_transport({("POST", "/v1/namespaces"): {"Index": 3}})

        result = await NamespacesAPI(transport).create_if_not_exists({"Name": "prod"})

        assert result.index == 3


class TestNamespaceUsage:
    async def test_counts_jobs_and_allocations(self, make_transport, make_allocation):
        transport = make_transport(
            {
                ("GET", "/v1/jobs"): [
                    {"ID": "web", "Status": "running"},
                    {"ID": "batch", "Status": "dead"},
                    {"ID": "cron", "Status": "running"},
                ],
                ("GET", "/v1/allocations"): [
                    make_allocation("a1"),
                    make_allocation("a2", client_status="failed"),
                ],
            }
        )

        usage = await NamespacesAPI(transport).get_usage_stats("prod")

        assert usage.jobs.total == 3
        assert usage.jobs.running == 2
        assert usage.jobs.dead == 1
        assert usage.allocations.running == 1
        assert usage.allocations.failed == 1
        for call in transport.request.call_args_list:
            assert call.kwargs["params"] == {"namespace": "prod"}

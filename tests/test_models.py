from apim_lifecycle.contract.base import ContractFormat, Operation, Parameter, ParsedContract
from apim_lifecycle.gateway.base import ApiResource, Product, ProductState, Subscription


class TestContractModels:
    def test_operation_key_http(self):
        op = Operation(name="listPets", display_name="List", method="get", url_template="/pets")
        assert op.key == ("GET", "/pets")

    def test_operation_key_rpc(self):
        op = Operation(name="GetUser", display_name="GetUser", rpc_name="GetUser", url_template="/x.S/GetUser")
        assert op.key == ("rpc", "GetUser")

    def test_parameter_defaults(self):
        p = Parameter(name="limit", location="query")
        assert p.required is False
        assert p.param_type == "string"
        assert p.constraints == {}

    def test_contract_operation_count(self):
        contract = ParsedContract(
            title="T",
            source_format=ContractFormat.OPENAPI,
            operations=(Operation(name="a", display_name="A"), Operation(name="b", display_name="B")),
        )
        assert contract.operation_count == 2


class TestResourceModels:
    def test_api_protocols_are_deduplicated(self):
        api = ApiResource(api_id="a", display_name="A", path="a", protocols=["HTTPS", "https", "http"])
        assert api.protocols == ["https", "http"]

    def test_api_defaults(self):
        api = ApiResource(api_id="a", display_name="A", path="a")
        assert api.protocols == ["https"]
        assert api.subscription_required is True
        assert api.operation_count == 0

    def test_product_defaults_to_not_published(self):
        assert Product(product_id="p", display_name="P").state is ProductState.NOT_PUBLISHED

    def test_subscription_keys_hidden_in_repr(self):
        sub = Subscription(subscription_id="s", display_name="S", product_id="p", primary_key="secret-key")
        assert "secret-key" not in repr(sub)
        assert sub.scope == "/products/p"

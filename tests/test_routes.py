"""Tests for the authorizer binding and the route table provisioner."""

import pytest

from stackpipe.authorizer import bind
from stackpipe.errors import (
    AuthorizerNotDeclaredError,
    ConstructionError,
    DuplicateAuthorizerError,
    RouteAuthorizationIncompleteError,
)
from stackpipe.routes import (
    add_authorized_routes,
    add_routes,
    require_authorization,
    verify_authorization,
)
from stackpipe.schemas import (
    ApiSurface,
    AuthorizationMode,
    AuthorizerBinding,
    HttpMethod,
)


@pytest.fixture
def binding(surface, make_unit):
    return bind(surface, make_unit("Authorizer"))


class TestBind:

    def test_bind_declares_unit_and_binding(self, surface, make_unit):
        unit = make_unit("Authorizer")
        binding = bind(surface, unit)
        assert surface.authorizer is binding
        assert surface.units["Authorizer"] is unit
        assert binding.declared
        assert binding.authorizer_id == "Authorizer"

    def test_second_binding_rejected(self, surface, binding, make_unit):
        with pytest.raises(DuplicateAuthorizerError):
            bind(surface, make_unit("OtherAuthorizer"))
        assert surface.authorizer is binding


class TestAddRoutes:

    def test_one_handle_per_method(self, surface, make_unit):
        handles = add_routes(surface, "/widgets", ["GET", "HEAD"], make_unit())
        assert [h.route_key for h in handles] == ["GET /widgets", "HEAD /widgets"]
        assert [h.logical_id for h in handles] == ["RouteGetWidgets", "RouteHeadWidgets"]
        assert all(h.route.authorization == AuthorizationMode.NONE for h in handles)
        assert "ListWidgets" in surface.units

    def test_duplicate_route_key_rejected(self, surface, make_unit):
        unit = make_unit()
        add_routes(surface, "/widgets", [HttpMethod.GET], unit)
        with pytest.raises(ConstructionError, match="already declared"):
            add_routes(surface, "/widgets", [HttpMethod.GET], unit)

    def test_same_path_other_method_allowed(self, surface, make_unit):
        unit = make_unit()
        add_routes(surface, "/widgets", [HttpMethod.GET], unit)
        add_routes(surface, "/widgets", [HttpMethod.POST], unit)
        assert surface.route_keys() == ["GET /widgets", "POST /widgets"]

    def test_logical_ids_unique(self, surface, make_unit):
        add_routes(surface, "/widgets", ["GET"], make_unit())
        handles = add_routes(surface, "/widgets/", ["GET"], make_unit("GetWidget"))
        assert handles[0].logical_id == "RouteGetWidgets2"


class TestRequireAuthorization:

    def test_every_handle_overridden(self, surface, binding, make_unit):
        handles = add_authorized_routes(surface, "/widgets", ["GET", "HEAD"], make_unit(), binding)
        assert len(handles) == 2
        for handle in handles:
            assert handle.overrides == {
                "AuthorizationType": "CUSTOM",
                "AuthorizerId": binding,
            }
            assert handle.route.authorization == AuthorizationMode.CUSTOM
            assert handle.route.binding is binding
        # Both handles point at the same binding
        assert handles[0].overrides["AuthorizerId"] is handles[1].overrides["AuthorizerId"]
        verify_authorization(surface)

    def test_other_surface_binding_rejected(self, surface, make_unit):
        other = ApiSurface(name="Other", stage_name="dev")
        other_binding = bind(other, make_unit("Authorizer"))
        handles = add_routes(surface, "/widgets", ["GET"], make_unit())
        with pytest.raises(ConstructionError, match="not part of surface"):
            require_authorization(handles, other_binding)
        assert handles[0].overrides == {}

    def test_undeclared_binding_rejected(self, surface, make_unit):
        unit = surface.declare_unit(make_unit("Authorizer"))
        binding = AuthorizerBinding(surface, unit)
        handles = add_routes(surface, "/widgets", ["GET"], make_unit())
        with pytest.raises(AuthorizerNotDeclaredError):
            require_authorization(handles, binding)

    def test_unauthorized_routes_untouched(self, surface, binding, make_unit):
        add_authorized_routes(surface, "/widgets", ["GET"], make_unit(), binding)
        public = add_routes(surface, "/health", ["GET"], make_unit("Health"))
        verify_authorization(surface)
        assert public[0].overrides == {}


class TestVerifyAuthorization:

    def test_partial_override_detected(self, surface, binding, make_unit):
        handles = add_routes(surface, "/widgets", ["GET", "HEAD"], make_unit())
        # Patch only the first handle, the way a single-resource override would
        require_authorization(handles[:1], binding)
        with pytest.raises(RouteAuthorizationIncompleteError) as exc_info:
            verify_authorization(surface)
        assert exc_info.value.route_keys == ["HEAD /widgets"]

    def test_removed_override_detected(self, surface, binding, make_unit):
        handles = add_authorized_routes(surface, "/widgets", ["GET", "HEAD"], make_unit(), binding)
        del handles[1].overrides["AuthorizerId"]
        with pytest.raises(RouteAuthorizationIncompleteError, match="HEAD /widgets"):
            verify_authorization(surface)

    def test_foreign_binding_on_route_detected(self, surface, binding, make_unit):
        handles = add_authorized_routes(surface, "/widgets", ["GET"], make_unit(), binding)
        other = ApiSurface(name="Other", stage_name="dev")
        handles[0].route.binding = bind(other, make_unit("Authorizer"))
        with pytest.raises(ConstructionError, match="not bound to this surface"):
            verify_authorization(surface)

    def test_override_pointing_at_other_binding_detected(self, surface, binding, make_unit):
        handles = add_authorized_routes(surface, "/widgets", ["GET"], make_unit(), binding)
        other = ApiSurface(name="Other", stage_name="dev")
        handles[0].overrides["AuthorizerId"] = bind(other, make_unit("Authorizer"))
        with pytest.raises(RouteAuthorizationIncompleteError, match="GET /widgets"):
            verify_authorization(surface)

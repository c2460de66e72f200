import pytest

from ipcbus.protocol import MAX_TYPE
from ipcbus.registry import HandlerTable


async def handler_a(service, payload, conn):
    pass


async def handler_b(service, payload, conn):
    pass


class TestHandlerTable:
    def test_register_and_get(self):
        table = HandlerTable()
        table.register(1, handler_a)
        assert table.get(1) is handler_a
        assert table.get(2) is None

    def test_reregister_overwrites(self):
        table = HandlerTable({1: handler_a})
        table.register(1, handler_b)
        assert table.get(1) is handler_b
        assert len(table) == 1

    def test_none_handler_is_ignored(self):
        table = HandlerTable({1: handler_a})
        table.register(1, None)
        table.register(2, None)
        assert table.get(1) is handler_a
        assert 2 not in table

    def test_response_type_is_reserved(self):
        table = HandlerTable()
        with pytest.raises(ValueError, match="reserved"):
            table.register(0, handler_a)

    @pytest.mark.parametrize("msg_type", [-5, MAX_TYPE + 1])
    def test_out_of_range_type(self, msg_type):
        with pytest.raises(ValueError, match="uint32"):
            HandlerTable().register(msg_type, handler_a)

    def test_max_type_is_allowed(self):
        table = HandlerTable({MAX_TYPE: handler_a})
        assert MAX_TYPE in table

    def test_types_sorted(self):
        table = HandlerTable({9: handler_a, 3: handler_b})
        assert table.types == [3, 9]

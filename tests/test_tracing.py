import unittest

from common.tracing import Tracer, get_trace_headers, span_id_var, trace_id_var


class TestTracing(unittest.TestCase):
    def setUp(self):
        self.tracer = Tracer("payment-service-test")
        self.outer = (trace_id_var.get(), span_id_var.get())

    def test_span_context_is_restored_on_exit(self):
        with self.tracer.start_span("sweep", trace_id="t-1") as span:
            self.assertEqual(trace_id_var.get(), "t-1")
            self.assertEqual(get_trace_headers()["X-Span-ID"], span.span_id)

        self.assertEqual((trace_id_var.get(), span_id_var.get()), self.outer)

    def test_consecutive_spans_do_not_chain(self):
        with self.tracer.start_span("sweep") as first:
            pass
        with self.tracer.start_span("sweep") as second:
            pass

        self.assertEqual(first.parent_span_id, second.parent_span_id)
        self.assertNotEqual(second.parent_span_id, first.span_id)

    def test_child_span_inherits_then_restores_parent(self):
        with self.tracer.start_span("sweep") as parent:
            with self.tracer.start_span("dispatch") as child:
                self.assertEqual(child.trace_id, parent.trace_id)
                self.assertEqual(child.parent_span_id, parent.span_id)
            self.assertEqual(span_id_var.get(), parent.span_id)
            self.assertEqual(trace_id_var.get(), parent.trace_id)

    def test_context_is_restored_when_the_span_fails(self):
        with self.assertRaises(ValueError):
            with self.tracer.start_span("dispatch") as span:
                raise ValueError("boom")

        self.assertEqual(span.status, "error")
        self.assertEqual(span.tags["error.type"], "ValueError")
        self.assertEqual((trace_id_var.get(), span_id_var.get()), self.outer)


if __name__ == "__main__":
    unittest.main()

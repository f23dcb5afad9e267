import streamlit as st
import pandas as pd
from calibration import ApertureGeometry
from calibration_io import (load_calibration_files, read_field_requests, report_bytes, results_to_frame,
                            summary, verify_fields)
from emu_errors import EmuCheckError
from emu_settings import VerificationSettings
from mu_check import FieldRequest, Verdict

st.set_page_config(page_title="EMU check", layout="wide")
st.title("EMU check – electron MU verification")
st.write("Independent check of TPS monitor units against measured output factors.")

# Upload calibration data
uploaded = st.sidebar.file_uploader("Calibration files (of_*.csv, ssd_*.csv)", type="csv",
                                    accept_multiple_files=True)

st.sidebar.header('Tolerance settings')
warn_pct = st.sidebar.number_input('Warn threshold (%)', min_value=0.0, value=2.0)
fail_pct = st.sidebar.number_input('Fail threshold (%)', min_value=0.0, value=5.0)
tol_mm = st.sidebar.number_input('Exact match tolerance (mm)', min_value=0.0, value=0.01, format="%.3f")

try:
    settings = VerificationSettings(warn_pct / 100.0, fail_pct / 100.0, tol_mm)
except EmuCheckError as e:
    st.sidebar.error(str(e))
    st.stop()

if not uploaded:
    st.info("Upload the output factor files to start.")
    st.stop()

try:
    data = load_calibration_files(uploaded, tolerance=settings.geometry_tolerance_mm)
except EmuCheckError as e:
    st.error(f"Calibration data rejected: {e}")
    st.stop()

store = data.store
verifier = data.verifier(settings)

single, batch = st.tabs(["Single field", "Batch (CSV)"])

with single:
    machines = store.machines()
    machine = st.selectbox("Machine", machines) if len(machines) > 1 else machines[0]
    energy = st.selectbox("Energy (MeV)", store.energies(machine))
    applicator = st.selectbox("Applicator", store.applicators(machine, energy))
    with st.expander("Measured apertures"):
        st.write(pd.DataFrame([{'width': g.width, 'height': g.height}
                               for g in store.apertures(energy, applicator, machine)]))
    c1, c2 = st.columns(2)
    width = c1.number_input("Insert width (mm)", min_value=0.0, value=100.0)
    height = c2.number_input("Insert height (mm)", min_value=0.0, value=100.0)
    zref = store.zref(energy, machine)
    dose_label = f"Prescribed dose at zref {zref:g} cm (cGy)" if zref is not None else "Prescribed dose (cGy)"
    dose = c1.number_input(dose_label, min_value=0.0, value=200.0)
    dose_per_mu = c2.number_input("Reference dose (cGy/MU)", min_value=0.0, value=1.0)
    ssd = c1.number_input("SSD", min_value=0.0, value=100.0) if data.ssd is not None else None
    planned_mu = c2.number_input("TPS MU", min_value=0.0, value=200.0)

    if st.button("Verify"):
        try:
            request = FieldRequest(energy, applicator, ApertureGeometry(width, height), planned_mu,
                                   dose, dose_per_mu, ssd=ssd, machine=machine, label='field')
            result = verifier.verify(request)
        except EmuCheckError as e:
            st.error(f"{type(e).__name__}: {e}")
        else:
            st.success(f"Output factor: **{result.output_factor:.4f}**")
            st.info(f"Calculated MU: **{result.expected_mu:.2f}** | TPS MU: **{result.planned_mu:.2f}**")
            st.write(f"Deviation: **{result.deviation_pct:+.2f}%**")
            if result.verdict is Verdict.PASS:
                st.markdown("✅ **Within tolerance**")
            elif result.verdict is Verdict.WARN:
                st.markdown("⚠️ **Above warning threshold**")
            else:
                st.markdown("❌ **Out of tolerance!**")

with batch:
    fields_file = st.file_uploader("Fields CSV", type="csv", key="fields")
    if fields_file:
        try:
            requests = read_field_requests(fields_file)
        except EmuCheckError as e:
            st.error(str(e))
            st.stop()
        results = results_to_frame(requests, verify_fields(verifier, requests))
        st.write("MU check report:", results)
        st.write(summary(results))
        st.download_button(
            "Download Excel Report",
            data=report_bytes(results, settings),
            file_name="emu_check_report.xlsx",
            mime='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        )
